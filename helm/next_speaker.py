"""Decide whether the model should keep talking after a turn without tool calls."""

import logging

from .content import is_empty_content, is_function_response, user_content
from .report import AgentError

logger = logging.getLogger(__name__)

CHECK_PROMPT = """\
Analyze *only* the content and structure of your immediately preceding response \
(your last turn in the conversation history). Based *strictly* on that response, \
determine who should logically speak next: the 'user' or the 'model' (you).

**Decision Rules (apply in order):**
1. **Model Continues:** If your last response explicitly states an immediate next \
action *you* intend to take (e.g., "Next, I will...", "Now I'll process..."), OR if \
the response seems clearly incomplete (cut off mid-thought without a natural \
conclusion), then the **'model'** should speak next.
2. **Question to User:** If your last response ends with a direct question \
specifically addressed *to the user*, then the **'user'** should speak next.
3. **Waiting for User:** If your last response completed a thought, statement, or \
task *and* does not meet the criteria for Rule 1 or Rule 2, it implies a pause \
expecting user input. In this case, the **'user'** should speak next.

**Output Format:**
Respond *only* in JSON format according to the following schema.

```json
{
  "type": "object",
  "properties": {
    "reasoning": {
      "type": "string",
      "description": "Brief explanation justifying the 'next_speaker' choice based *strictly* on the applicable rule and the content/structure of the preceding turn."
    },
    "next_speaker": {
      "type": "string",
      "enum": ["user", "model"],
      "description": "Who should speak next based *only* on the preceding turn and the decision rules."
    }
  },
  "required": ["next_speaker", "reasoning"]
}
```
"""

RESPONSE_SCHEMA = {
    "type": "object",
    "properties": {
        "reasoning": {"type": "string"},
        "next_speaker": {"type": "string", "enum": ["user", "model"]},
    },
    "required": ["reasoning", "next_speaker"],
}


async def check_next_speaker(chat, client, token) -> dict | None:
    """Return ``{"reasoning", "next_speaker"}`` or None when undecidable.

    *client* must provide ``generate_json(contents, schema, token)``.
    """
    history = chat.get_history(curated=True)
    if not history:
        return None

    last = history[-1]
    if is_function_response(last):
        return {
            "reasoning": "The last message was a function response, so the model should speak next.",
            "next_speaker": "model",
        }
    # Curation drops empty replies, so look for one in the raw history.
    raw = chat.get_history()
    if raw and raw[-1]["role"] == "model" and is_empty_content(raw[-1]):
        return {
            "reasoning": "The last message was empty, so the model should continue.",
            "next_speaker": "model",
        }
    if last["role"] != "model":
        return None

    contents = history + [user_content(CHECK_PROMPT)]
    try:
        result = await client.generate_json(contents, RESPONSE_SCHEMA, token)
    except AgentError as e:
        logger.warning("next speaker check failed: %s", e)
        return None

    if isinstance(result, dict) and result.get("next_speaker") in ("user", "model"):
        return result
    return None
