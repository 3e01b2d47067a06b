"""
Human-readable record numbers.

Format: ``{PREFIX}-{base36 epoch milliseconds}-{4 random base36 chars}``,
e.g. ``AUD-LZ3K9Q1A-7F2Q``. Uniqueness is enforced per organization by a
unique constraint on each table.
"""

import secrets
import string
import time

ASSESSMENT_PREFIX = "RSK"
TASK_PREFIX = "AUD"
FINDING_PREFIX = "FND"
CHECK_PREFIX = "CMP"
STUDY_PREFIX = "CMN"
PROPOSAL_PREFIX = "IMP"

_ALPHABET = string.digits + string.ascii_uppercase


def _base36(value: int) -> str:
    if value == 0:
        return "0"
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_ALPHABET[rem])
    return "".join(reversed(digits))


def generate_number(prefix: str) -> str:
    millis = int(time.time() * 1000)
    suffix = "".join(secrets.choice(_ALPHABET) for _ in range(4))
    return f"{prefix}-{_base36(millis)}-{suffix}"
