"""
Utility functions for ID generation and ServerQuery text escaping
"""
import random
import string

# ServerQuery escapes, applied in this order when encoding
_ESCAPES = [
    ("\\", r"\\"),
    ("/", r"\/"),
    (" ", r"\s"),
    ("|", r"\p"),
    ("\a", r"\a"),
    ("\b", r"\b"),
    ("\f", r"\f"),
    ("\n", r"\n"),
    ("\r", r"\r"),
    ("\t", r"\t"),
    ("\v", r"\v"),
]
_UNESCAPES = {escaped[1]: raw for raw, escaped in _ESCAPES}


def generate_session_id(length: int = 9) -> str:
    """Generate a random viewer session ID"""
    alphabet = string.ascii_lowercase + string.digits
    return "viewer_" + "".join(random.choice(alphabet) for _ in range(length))


def escape_query_value(value: str) -> str:
    """Escape a value for a ServerQuery command"""
    for raw, escaped in _ESCAPES:
        value = value.replace(raw, escaped)
    return value


def unescape_query_value(value: str) -> str:
    """Undo ServerQuery escaping; unknown escapes keep the escaped character"""
    out = []
    chars = iter(value)
    for char in chars:
        if char != "\\":
            out.append(char)
            continue
        code = next(chars, "")
        out.append(_UNESCAPES.get(code, code))
    return "".join(out)
