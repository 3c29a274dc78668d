"""Policy check applied to a new password before it is sent to the auth server."""

import re
from typing import List

PASSWORD_LENGTH_MASK = 0x1
PASSWORD_UPPERCASE_LETTER_MASK = 0x2
PASSWORD_LOWERCASE_LETTER_MASK = 0x4
PASSWORD_DIGIT_MASK = 0x8
PASSWORD_SPECIAL_CHARACTER_MASK = 0x10
PASSWORD_INVALID_CHARACTER_MASK = 0x20

PASSWORD_LENGTH_MIN = 30
PASSWORD_UPPERCASE_LETTER_MIN = 1
PASSWORD_LOWERCASE_LETTER_MIN = 1
PASSWORD_DIGIT_MIN = 1
PASSWORD_SPECIAL_CHARACTER_MIN = 1
PASSWORD_SPECIAL_CHARACTER_SET = "~!@#$%^&*()-_=+[]{}|;:,.<>/?"
PASSWORD_MIN_NUMBER_OF_CATEGORIES = 3

_ALLOWED_CHARACTER = re.compile(r"[A-Za-z0-9]")

_CATEGORY_MASKS = (
    PASSWORD_UPPERCASE_LETTER_MASK,
    PASSWORD_LOWERCASE_LETTER_MASK,
    PASSWORD_DIGIT_MASK,
    PASSWORD_SPECIAL_CHARACTER_MASK,
)


def check_new_password(password: str) -> int:
    """Return a bit mask of the policy rules the password fails."""
    result = 0

    if len(password) < PASSWORD_LENGTH_MIN:
        result |= PASSWORD_LENGTH_MASK

    count_upper = count_lower = count_digit = count_special = 0

    for char in password:
        is_special = char in PASSWORD_SPECIAL_CHARACTER_SET
        if not _ALLOWED_CHARACTER.fullmatch(char) and not is_special:
            result |= PASSWORD_INVALID_CHARACTER_MASK
        if char.isupper():
            count_upper += 1
        if char.islower():
            count_lower += 1
        if char.isdigit():
            count_digit += 1
        if is_special:
            count_special += 1

    if count_upper < PASSWORD_UPPERCASE_LETTER_MIN:
        result |= PASSWORD_UPPERCASE_LETTER_MASK
    if count_lower < PASSWORD_LOWERCASE_LETTER_MIN:
        result |= PASSWORD_LOWERCASE_LETTER_MASK
    if count_digit < PASSWORD_DIGIT_MIN:
        result |= PASSWORD_DIGIT_MASK
    if count_special < PASSWORD_SPECIAL_CHARACTER_MIN:
        result |= PASSWORD_SPECIAL_CHARACTER_MASK

    return result


def satisfied_categories(violations: int) -> int:
    return sum(1 for mask in _CATEGORY_MASKS if not violations & mask)


def policy_violations(password: str) -> List[str]:
    """Human-readable reasons the password is rejected; empty when it is acceptable."""
    result = check_new_password(password)
    reasons = []

    if result & PASSWORD_INVALID_CHARACTER_MASK:
        reasons.append(
            "New password contains invalid symbol; valid symbols are "
            f"[A-Z][a-z][0-9]{PASSWORD_SPECIAL_CHARACTER_SET}"
        )
    if result & PASSWORD_LENGTH_MASK:
        reasons.append(f"New password length should be at least {PASSWORD_LENGTH_MIN} characters")
    if satisfied_categories(result) < PASSWORD_MIN_NUMBER_OF_CATEGORIES:
        reasons.append(
            f"Password must contain characters belonging to at least {PASSWORD_MIN_NUMBER_OF_CATEGORIES} "
            "of the following four categories: uppercase letters, lowercase letters, digits, "
            "and special characters"
        )

    return reasons
