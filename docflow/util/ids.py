import ulid


def new_id(prefix: str = "") -> str:
    """Sortable string id: optional type prefix + ULID, e.g. "wfi_01HV..."."""
    return prefix + ulid.new().str
