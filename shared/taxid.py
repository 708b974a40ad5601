"""Tax identifier (CUIT/CUIL) helpers."""
import re
from typing import Optional

_NON_DIGITS = re.compile(r'\D')

CUIT_WEIGHTS = (5, 4, 3, 2, 7, 6, 5, 4, 3, 2)


def normalize_tax_id(value: Optional[str]) -> Optional[str]:
    """Canonical digits-only form, or None when nothing numeric remains."""
    if not value:
        return None
    digits = _NON_DIGITS.sub('', str(value))
    return digits or None


def is_valid_cuit(value: Optional[str]) -> bool:
    """Mod-11 check digit validation for an 11-digit CUIT/CUIL."""
    digits = normalize_tax_id(value)
    if not digits or len(digits) != 11:
        return False
    nums = [int(d) for d in digits]
    total = sum(w * n for w, n in zip(CUIT_WEIGHTS, nums))
    check = 11 - (total % 11)
    if check == 11:
        check = 0
    elif check == 10:
        check = 9
    return check == nums[10]
