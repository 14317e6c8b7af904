"""
Renewal Decision Policy.

A pure function: the same metadata, options and clock reading always give
the same answer.  The clock is read once per evaluation.
"""
from __future__ import annotations

import enum
from datetime import datetime, timezone
from typing import Optional

from config import RenewalOptions
from renewal.cache import CertificateMetadata


class Decision(str, enum.Enum):
    DUE = "due"
    NOT_DUE = "not-due"


def evaluate(
    metadata: Optional[CertificateMetadata],
    options: RenewalOptions,
    now: datetime | None = None,
) -> Decision:
    """
    Decide whether the certificate described by *metadata* must be renewed.

    - no certificate yet → due
    - now >= not_after - time_until_expiry_before_renewal → due
    - now >= not_before + time_after_issue_date_before_renewal → due
    """
    if metadata is None:
        return Decision.DUE
    if now is None:
        now = datetime.now(tz=timezone.utc)

    before_expiry = options.time_until_expiry_before_renewal
    if before_expiry is not None and now >= metadata.not_after - before_expiry:
        return Decision.DUE

    after_issue = options.time_after_issue_date_before_renewal
    if after_issue is not None and now >= metadata.not_before + after_issue:
        return Decision.DUE

    return Decision.NOT_DUE
