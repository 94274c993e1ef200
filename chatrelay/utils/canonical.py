import orjson


def dumps(d: dict) -> bytes:
    # datetimes are emitted as RFC 3339 strings by orjson
    return orjson.dumps(d)


def loads(data):
    return orjson.loads(data)
