"""History compression: where to split, and what the new history looks like.

The older part of the history is replaced by a model-written summary; the
newer part is kept verbatim. The split never separates a function call from
the function response answering it.
"""

import json

from .content import is_function_response, model_content, user_content

COMPRESSION_TOKEN_THRESHOLD = 0.7
COMPRESSION_PRESERVE_THRESHOLD = 0.3
COMPRESSION_ACK = "Got it. Thanks for the additional context!"

COMPRESSION_PROMPT = """\
You are the component that summarizes internal chat history into a given structure.

When the conversation history grows too large, you will be invoked to distill \
the entire history into a concise, structured XML snapshot. This snapshot is \
CRITICAL, as it will become the agent's *only* memory of the past. The agent \
will resume its work based solely on this snapshot. All crucial details, plans, \
errors, and user directives MUST be preserved.

First, think through the entire history in a private scratchpad. Review the \
user's overall goal, the agent's actions, tool outputs, file modifications, and \
any unresolved questions. Identify every piece of information essential for \
future actions.

After your reasoning is complete, generate the final <state_snapshot> XML \
object. Be incredibly dense with information. Omit any irrelevant \
conversational filler.

The structure MUST be as follows:

<state_snapshot>
    <overall_goal>
        <!-- A single, concise sentence describing the user's high-level objective. -->
    </overall_goal>

    <key_knowledge>
        <!-- Crucial facts, conventions, and constraints the agent must remember. -->
    </key_knowledge>

    <file_system_state>
        <!-- Files that have been created, read, modified, or deleted, with notes. -->
    </file_system_state>

    <recent_actions>
        <!-- A summary of the last few significant agent actions and their outcomes. -->
    </recent_actions>

    <current_plan>
        <!-- The agent's step-by-step plan, marking completed steps. -->
    </current_plan>
</state_snapshot>
"""

COMPRESSION_REQUEST = "First, reason in your scratchpad. Then, generate the <state_snapshot>."


def find_index_after_fraction(history: list[dict], fraction: float) -> int:
    """Index of the first entry at which the cumulative serialized size
    reaches *fraction* of the total.
    """
    if fraction <= 0 or fraction >= 1:
        raise ValueError("Fraction must be between 0 and 1")

    lengths = [len(json.dumps(c, separators=(",", ":"), default=str)) for c in history]
    target = sum(lengths) * fraction
    so_far = 0
    for i, length in enumerate(lengths):
        so_far += length
        if so_far >= target:
            return i
    return len(lengths)


def find_compress_split_point(
    history: list[dict], preserve_fraction: float = COMPRESSION_PRESERVE_THRESHOLD
) -> int:
    """Index where the kept suffix starts.

    Starts at the entry that crosses ``1 - preserve_fraction`` of the history
    and walks backward past function responses, so the kept suffix begins at
    or before the model entry whose calls they answer.
    """
    index = find_index_after_fraction(history, 1 - preserve_fraction)
    while 0 < index < len(history) and is_function_response(history[index]):
        index -= 1
    return index


def build_compressed_history(summary: str, kept: list[dict]) -> list[dict]:
    """Summary as a user entry, then the kept suffix, keeping roles alternating."""
    new_history = [user_content(summary)]
    if not kept or kept[0]["role"] != "model":
        new_history.append(model_content(COMPRESSION_ACK))
    return new_history + kept
