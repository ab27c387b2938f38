"""Text utilities for sanitization and key normalization."""
import re


def sanitize_text(text: str) -> str:
    """Clean and normalize model output for safe display.

    Preserves UTF-8 characters, newlines, and basic formatting while removing
    control characters that could break JSON or terminal output.

    Examples:
        >>> sanitize_text("José's score: 95%")
        "José's score: 95%"
        >>> sanitize_text(None)
        ""
    """
    if text is None:
        return ""

    text = str(text)

    # Keep \t, \n, \r; drop every other C0/C1 control character
    text = re.sub(r'[\x00-\x08\x0B-\x0C\x0E-\x1F\x7F-\x9F]', '', text)
    text = re.sub(r'[ \t]+', ' ', text)
    text = re.sub(r'\n{3,}', '\n\n', text)
    text = '\n'.join(line.strip() for line in text.split('\n'))

    return text.strip()


def normalize_topic(topic: str) -> str:
    """Return the map key used for a struggling topic.

    Case-folded with surrounding and repeated inner whitespace collapsed, so
    "Fractions" and " fractions " land on the same counter. Idempotent.

    Examples:
        >>> normalize_topic("  Long   Division ")
        'long division'
    """
    if topic is None:
        return ""
    return " ".join(str(topic).split()).casefold()


def sanitize_title(raw: str, max_words: int = 3, max_chars: int = 40) -> str:
    """Reduce a model-suggested title to plain words.

    Keeps ASCII letters, digits and spaces, at most ``max_words`` words and
    ``max_chars`` characters.
    """
    if not raw:
        return ""
    cleaned = re.sub(r'[^a-zA-Z0-9\s]', '', raw)
    words = cleaned.split()
    return " ".join(words[:max_words])[:max_chars].strip()


def fallback_title(user_message: str) -> str:
    """Title built from the first two meaningful words of a message."""
    cleaned = re.sub(r'[^a-zA-Z0-9\s]', '', user_message or "")
    words = [w for w in cleaned.split() if len(w) > 2][:2]
    return " ".join(w[0].upper() + w[1:].lower() for w in words)
