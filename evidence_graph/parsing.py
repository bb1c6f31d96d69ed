import json
import re
from typing import Any, List

_STRING_LITERAL = re.compile(r'("(?:\\.|[^"\\])*")')


def _repair_structure(segment: str) -> str:
    """Drop trailing commas and quote bare keys in text outside string literals."""
    segment = re.sub(r",\s*(\]|\})", r"\1", segment)

    def _quote_keys(m: re.Match) -> str:
        return f"{m.group(1)}\"{m.group(2)}\"{m.group(3)}"
    return re.sub(r"([\{,\s])([A-Za-z_][A-Za-z0-9_]*)\s*(:)", _quote_keys, segment)


def safe_json_loads(text: Any) -> Any:
    """
    Parse JSON leniently.

    Accepts already-parsed values, takes the last fenced ```json block if
    present, and repairs trailing commas and unquoted keys before giving up.
    Returns {} (or [] for array-looking text) when nothing parses.
    """
    if isinstance(text, (dict, list)):
        return text
    if not isinstance(text, str):
        return {}
    s = text.strip()
    blocks = re.findall(r"```(?:json)?\s*([\s\S]*?)```", s)
    if blocks:
        s = blocks[-1].strip()
    try:
        return json.loads(s)
    except json.JSONDecodeError:
        pass
    s = s.replace("\r", "\n")
    # Odd parts are string literals and are left untouched
    parts = _STRING_LITERAL.split(s)
    s = "".join(part if i % 2 else _repair_structure(part) for i, part in enumerate(parts))
    try:
        return json.loads(s)
    except json.JSONDecodeError:
        return [] if s.startswith('[') else {}


def extract_statement_ids(text: Any) -> List[str]:
    """Statement id tokens (`s_12`) mentioned in free text or a parsed list, in first-seen order."""
    if isinstance(text, list):
        text = " ".join(str(x) for x in text)
    if not isinstance(text, str):
        return []
    seen = []
    for token in re.findall(r"\bs_\d+\b", text):
        if token not in seen:
            seen.append(token)
    return seen
