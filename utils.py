"""
Utility Functions Module
Cleaning of user-supplied product text before it is stored
"""
import html
import bleach


# Formatting allowed in product descriptions
ALLOWED_TAGS = [
    'p', 'ul', 'ol', 'li', 'strong', 'em', 'b', 'i',
    'a', 'code', 'pre', 'blockquote', 'br',
]
ALLOWED_ATTRIBUTES = {
    'a': ['href', 'title', 'rel'],
}


def sanitize_html(content):
    """
    Sanitize a product description while keeping basic formatting.

    Strips scripts, iframes, forms and event handler attributes.

    Args:
        content: Raw HTML content string

    Returns:
        Sanitized HTML string, or the input unchanged if empty
    """
    if not content:
        return content
    return bleach.clean(
        content,
        tags=ALLOWED_TAGS,
        attributes=ALLOWED_ATTRIBUTES,
        strip=True,
    )


def sanitize_input(text, max_length=None):
    """
    Sanitize a single-line field such as a product name or tagline.

    Args:
        text: Raw user input string
        max_length: Optional maximum length of the raw text

    Returns:
        Escaped and stripped string, or None if input is None
    """
    if text is None:
        return None
    cleaned = str(text).strip()
    # Truncate before escaping so an entity is never cut in half
    if max_length and len(cleaned) > max_length:
        cleaned = cleaned[:max_length]
    return html.escape(cleaned)
