"""Helpers for conversation contents and their parts.

A content is a dict ``{"role": "user" | "model", "parts": [...]}``. Each part
is a dict holding exactly one of the keys ``text``, ``function_call``
(``{id, name, args}``), ``function_response`` (``{id, name, response}``),
``inline_data`` (``{mime_type, data}``) or ``file_data``
(``{mime_type, file_uri}``).
"""


def to_parts(value) -> list[dict]:
    """Normalize a string, a part, or a list of either into a list of parts."""
    if value is None:
        return []
    if isinstance(value, str):
        return [{"text": value}]
    if isinstance(value, dict):
        return [value]
    parts = []
    for item in value:
        parts.append({"text": item} if isinstance(item, str) else item)
    return parts


def user_content(value) -> dict:
    return {"role": "user", "parts": to_parts(value)}


def model_content(value) -> dict:
    return {"role": "model", "parts": to_parts(value)}


def is_function_response(content: dict) -> bool:
    """True for a user entry carrying function responses.

    Binary and multi-part tool results travel next to their function
    response in the same entry, so one such part is enough.
    """
    parts = content.get("parts") or []
    return content.get("role") == "user" and any("function_response" in p for p in parts)


def get_response_text(content) -> str:
    """Concatenate the text parts of a content (or a bare list of parts)."""
    parts = content.get("parts") if isinstance(content, dict) else content
    return "".join(p.get("text") or "" for p in parts or [] if "text" in p)


def is_empty_content(content: dict) -> bool:
    """True when a content has no parts, or only empty text parts."""
    parts = content.get("parts") or []
    if not parts:
        return True
    return all(set(p) <= {"text"} and not p.get("text") for p in parts)
