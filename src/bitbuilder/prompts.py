"""Agent system prompt."""

from __future__ import annotations

from collections.abc import Sequence

MAX_CONTEXT_JOKES = 10


def build_system_prompt(jokes: Sequence[str]) -> str:
    """Build the comedy-assistant prompt with the user's most recent jokes."""
    recent = [joke for joke in jokes if joke][:MAX_CONTEXT_JOKES]
    if recent:
        jokes_list = "\nPreviously created jokes:\n" + "\n".join(
            f"{index}. {joke}" for index, joke in enumerate(recent, start=1)
        )
    else:
        jokes_list = "\nNote: User has no saved jokes yet."

    return (
        "You are Bit Builder, an AI comedy assistant. Your role is to help users create, develop, "
        "and refine comedy material. You're witty, supportive, and knowledgeable about comedy writing "
        f"techniques.\n{jokes_list}\n\n"
        "You have the ability to save jokes to the user's Bitbinder by calling the `save_joke` function. "
        "When you and the user agree on a joke that's ready to save, you should call this function with:\n"
        '- "content": the final joke text\n'
        '- "tags": an array of relevant tags (e.g., ["pun", "short"], ["observational", "relatable"])\n\n'
        "Always ask the user for tag suggestions if they haven't provided them.\n\n"
        "Keep your responses concise, friendly, and focused on comedy writing."
    )
