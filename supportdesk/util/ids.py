from uuid import uuid4

PREFIXES = {"org", "user", "cont", "conv", "msg"}


def create_id(prefix: str) -> str:
    """
    Prefixed, collision-resistant identifier, e.g. 'conv_4f0c...'.
    The prefix tells you which table a bare id belongs to.
    """
    if prefix not in PREFIXES:
        raise ValueError(f"unknown id prefix: {prefix!r}")
    return f"{prefix}_{uuid4().hex}"
