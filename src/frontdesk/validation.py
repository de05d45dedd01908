import re


def match_any_keyword(text: str, keywords) -> bool:
    """Check if any keyword appears in text as a whole word (not substring)."""
    lower = text.lower()
    return any(re.search(rf'\b{re.escape(kw)}\b', lower) for kw in keywords)


def matched_keywords(text: str, keywords) -> list[str]:
    """Return the keywords found in text, in the order they were given."""
    lower = text.lower()
    return [kw for kw in keywords if re.search(rf'\b{re.escape(kw)}\b', lower)]


SENTINEL_VALUES = {
    "not provided", "n/a", "na", "unknown", "none", "tbd",
    "{name}", "{last_name}", "{address}", "{phone}",
    "auto", "name", "address",
}

# Words that follow "this is" / "I'm" but are not names
NOT_A_NAME = {
    "calling", "having", "trying", "looking", "wondering", "just", "not",
    "the", "a", "an", "my", "your", "about", "from", "with", "in", "at",
    "going", "getting", "still", "so", "really", "very", "here", "there",
    "sorry", "fine", "good", "ok", "okay", "yes", "no", "yeah", "hello", "hi",
    "ac", "heat", "it", "is", "was", "regarding", "following", "checking",
    "and", "but", "or", "i", "we", "our", "on", "for", "to", "down", "out",
}

YES_SIGNALS = frozenset({
    "yes", "yeah", "yep", "yup", "sure", "correct", "that's right", "thats right",
    "right", "sounds right", "sounds good", "go ahead", "please do", "absolutely",
    "of course", "ok", "okay", "affirmative", "that works", "perfect",
})

NO_SIGNALS = frozenset({
    "no", "nope", "nah", "not right", "that's wrong", "thats wrong", "incorrect",
    "not really", "don't want", "do not want", "not now", "no thanks", "no thank you", "wrong",
})

WORD_TO_DIGIT = {
    "zero": "0", "oh": "0", "o": "0",
    "one": "1", "two": "2", "three": "3", "four": "4",
    "five": "5", "six": "6", "seven": "7", "eight": "8", "nine": "9",
}


def words_to_digits(text: str) -> str:
    """Convert number words and single digits to a digit string.

    Only handles single-digit words (one through nine, zero, oh, o).
    Used for spoken phone numbers and ZIP codes.
    Example: "two three nine five five five" → "239555"
    """
    tokens = re.findall(r"[a-zA-Z]+|\d", text.lower())
    digits = []
    for tok in tokens:
        if tok in WORD_TO_DIGIT:
            digits.append(WORD_TO_DIGIT[tok])
        elif tok.isdigit():
            digits.append(tok)
    return "".join(digits)


def is_yes(text: str) -> bool:
    if not text or not text.strip():
        return False
    if is_no(text):
        return False
    return match_any_keyword(text, YES_SIGNALS)


def is_no(text: str) -> bool:
    if not text or not text.strip():
        return False
    return match_any_keyword(text, NO_SIGNALS)


def validate_zip(value: str | None) -> str:
    if not value:
        return ""
    cleaned = value.strip()
    if re.match(r"^\d{5}$", cleaned):
        return cleaned
    return ""


def validate_name(value: str | None) -> str:
    if not value:
        return ""
    cleaned = value.strip().strip(".,!?")
    if cleaned.lower() in SENTINEL_VALUES:
        return ""
    # Reject phone numbers used as names
    if re.match(r"^[\d+\-() ]{7,}$", cleaned):
        return ""
    # Reject template variables
    if "{" in cleaned or "}" in cleaned:
        return ""
    if any(ch.isdigit() for ch in cleaned):
        return ""
    words = cleaned.split()
    if not words or len(words) > 3:
        return ""
    if any(w.lower() in NOT_A_NAME for w in words):
        return ""
    if len(cleaned) < 2:
        return ""
    return " ".join(w[:1].upper() + w[1:] for w in words)


def validate_phone(value: str | None) -> str:
    """Normalize to 10 digits (US). Returns "" when the value is not a phone number."""
    if not value:
        return ""
    digits = re.sub(r"\D", "", value)
    if len(digits) == 11 and digits.startswith("1"):
        digits = digits[1:]
    if len(digits) != 10:
        return ""
    # NANP area codes and exchanges never start with 0 or 1
    if digits[0] in "01" or digits[3] in "01":
        return ""
    return digits


def validate_address(value: str | None) -> str:
    if not value:
        return ""
    cleaned = value.strip().strip(".,")
    if cleaned.lower() in SENTINEL_VALUES:
        return ""
    if re.search(r"\bor\b", cleaned, re.IGNORECASE):
        return ""
    # Must contain at least one letter (rejects "7801", "78001")
    if not re.search(r"[a-zA-Z]", cleaned):
        return ""
    # Must be at least 5 characters (rejects "Oak", "1 Rk")
    if len(cleaned) < 5:
        return ""
    return cleaned


def word_count(text: str) -> int:
    return len(re.findall(r"[A-Za-z0-9']+", text))
