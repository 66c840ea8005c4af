"""Request parameter helpers shared by the API routes."""

from tierkeep.backup.errors import InvalidParameter

_TRUE = ('1', 'true', 'yes', 'on')
_FALSE = ('0', 'false', 'no', 'off')


def parse_flag(data, name: str, default=False):
    """
    Read a boolean from a JSON body or query args.

    Accepts JSON booleans and the strings the config layer accepts for
    env flags ('true'/'false', '1'/'0', 'yes'/'no', 'on'/'off', any case).
    A missing or null value yields `default`.

    Raises:
        InvalidParameter: For anything else, e.g. 'maybe' or 2
    """
    value = data.get(name)
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in _TRUE:
            return True
        if lowered in _FALSE:
            return False
    raise InvalidParameter(f"{name} must be true or false")
