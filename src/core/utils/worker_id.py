"""Worker and instance ID generation using coolnames."""

from coolname import generate_slug


def generate_worker_id(prefix: str = "") -> str:
    """Generate a unique, memorable worker ID using coolnames.

    Args:
        prefix: Optional prefix to prepend (e.g., "delivery")

    Returns:
        "prefix-word1-word2-word3" or "word1-word2-word3"

    Examples:
        >>> generate_worker_id()
        'brave-golden-tiger'
        >>> generate_worker_id("delivery")
        'delivery-swift-blue-falcon'
    """
    coolname_id = generate_slug(3)

    if prefix:
        return f"{prefix}-{coolname_id}"

    return coolname_id
