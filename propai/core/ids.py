import uuid

# Batch request custom_id <-> property id
CORRELATION_PREFIX = "property-"


def gen_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex}"


def correlation_id(property_id: str) -> str:
    return f"{CORRELATION_PREFIX}{property_id}"


def property_id_from_correlation(custom_id: str) -> str | None:
    if not custom_id or not custom_id.startswith(CORRELATION_PREFIX):
        return None
    return custom_id[len(CORRELATION_PREFIX):] or None
