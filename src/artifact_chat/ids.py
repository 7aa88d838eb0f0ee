import uuid


def new_id(prefix: str | None = None) -> str:
    """Return an opaque identifier, optionally prefixed with a component hint.

    IDs carry no timestamp and no ordering beyond allocation order.
    """
    token = uuid.uuid4().hex
    return f"{prefix}-{token}" if prefix else token
