"""String replacement engine for the edit_file tool."""


class EditError(ValueError):
    pass


def _trimmed_spans(content: str, old_string: str) -> list[tuple[int, int]]:
    """Spans of *content* whose lines equal *old_string*'s lines once stripped."""
    content_lines = content.split("\n")
    wanted = [line.strip() for line in old_string.rstrip("\n").split("\n")]
    offsets = [0]
    for line in content_lines:
        offsets.append(offsets[-1] + len(line) + 1)

    spans = []
    i = 0
    while i <= len(content_lines) - len(wanted):
        window = content_lines[i : i + len(wanted)]
        if [line.strip() for line in window] == wanted:
            end = offsets[i + len(wanted)] - 1
            if old_string.endswith("\n") and end < len(content):
                end += 1
            spans.append((offsets[i], end))
            i += len(wanted)
        else:
            i += 1
    return spans


def count_occurrences(content: str, old_string: str) -> int:
    return content.count(old_string)


def apply_edit(
    content: str, old_string: str, new_string: str, expected_replacements: int = 1
) -> str:
    """Replace *old_string* with *new_string* exactly *expected_replacements* times.

    Exact matches are tried first; when there are none, lines are compared
    with surrounding whitespace stripped. Raises EditError when the number of
    matches differs from what the caller expects.
    """
    if not old_string:
        raise EditError("old_string must not be empty")
    if old_string == new_string:
        raise EditError("old_string and new_string are identical")

    found = count_occurrences(content, old_string)
    if found:
        if found != expected_replacements:
            raise EditError(
                f"expected {expected_replacements} occurrence(s) of old_string "
                f"but found {found}"
            )
        return content.replace(old_string, new_string)

    spans = _trimmed_spans(content, old_string)
    if not spans:
        raise EditError("old_string not found in file")
    if len(spans) != expected_replacements:
        raise EditError(
            f"expected {expected_replacements} occurrence(s) of old_string "
            f"but found {len(spans)} (whitespace-insensitive)"
        )
    for start, end in reversed(spans):
        content = content[:start] + new_string + content[end:]
    return content
