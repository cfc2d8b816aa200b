"""
Deterministic hashing for user bucketing.

Every percentage and weight decision in the package goes through
`fnv1a_32` so a user lands in the same bucket wherever it is consulted.
"""

FNV_OFFSET_BASIS = 2166136261
FNV_PRIME = 16777619
_UINT32_MASK = 0xFFFFFFFF


def fnv1a_32(value: str) -> int:
    """Hash a string with 32-bit FNV-1a over its character codes.

    Args:
        value: Seed string, normally built with `bucket_seed`

    Returns:
        Unsigned 32-bit hash
    """
    h = FNV_OFFSET_BASIS
    for char in value:
        h ^= ord(char)
        h = (h * FNV_PRIME) & _UINT32_MASK
    return h


def bucket_seed(user_id: str, discriminator: str) -> str:
    """Build the `{userId}-{discriminator}` seed used for bucketing."""
    return f"{user_id}-{discriminator}"


def bucket(user_id: str, discriminator: str, buckets: int = 100) -> int:
    """Map a user and discriminator to a stable bucket in [0, buckets).

    Args:
        user_id: User identifier; anonymous callers pass ""
        discriminator: Flag key, optionally suffixed with a test id
        buckets: Number of buckets (100 for percentages, total weight
            for variant selection)

    Returns:
        Bucket index

    Raises:
        ValueError: If buckets is not positive
    """
    if buckets <= 0:
        raise ValueError("buckets must be > 0")
    return fnv1a_32(bucket_seed(user_id, discriminator)) % buckets
