import json
from typing import Callable, Literal, NamedTuple


PayloadSource = Literal["json", "prefix", "delimited", "raw"]


class Parsed(NamedTuple):
    value: str
    source: PayloadSource


PayloadParser = Callable[[str], Parsed | None]

STUDENT_ID_KEYS = ("studentid", "student_id", "studentnumber", "student_number", "lrn", "id")
STUDENT_PREFIX = "STUDENT:"


def parse_json_object(raw: str) -> Parsed | None:
    text = raw.strip()
    if not text.startswith("{"):
        return None
    try:
        data = json.loads(text)
    except ValueError:
        return None
    if not isinstance(data, dict):
        return None

    by_key = {str(key).strip().lower(): value for key, value in data.items()}
    for key in STUDENT_ID_KEYS:
        value = by_key.get(key)
        if isinstance(value, bool) or value is None:
            continue
        if isinstance(value, (str, int)):
            candidate = str(value).strip()
            if candidate:
                return Parsed(candidate, "json")
    return None


def parse_student_prefix(raw: str) -> Parsed | None:
    text = raw.strip()
    if not text.upper().startswith(STUDENT_PREFIX):
        return None
    candidate = text[len(STUDENT_PREFIX):].strip()
    if "|" in candidate:
        candidate = candidate.split("|", 1)[0].strip()
    return Parsed(candidate, "prefix") if candidate else None


def parse_delimited(raw: str) -> Parsed | None:
    if "|" not in raw:
        return None
    candidate = raw.split("|", 1)[0].strip()
    return Parsed(candidate, "delimited") if candidate else None


def parse_raw(raw: str) -> Parsed | None:
    candidate = raw.strip()
    return Parsed(candidate, "raw") if candidate else None


PARSER_CHAIN: tuple[PayloadParser, ...] = (
    parse_json_object,
    parse_student_prefix,
    parse_delimited,
    parse_raw,
)


def extract_student_id(payload: str | None) -> Parsed | None:
    """
    First parser in the chain that applies wins. Returns None only for an
    empty payload; anything else degrades to the trimmed raw text.
    """
    if not payload:
        return None
    for parser in PARSER_CHAIN:
        parsed = parser(payload)
        if parsed is not None:
            return parsed
    return None
