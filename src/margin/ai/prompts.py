"""Prompt builders for explanation and chat requests."""

from __future__ import annotations

from typing import Mapping, Sequence

DEFAULT_EXPLAIN_PROMPT = "You are a helpful AI assistant."
CHAT_SYSTEM_PROMPT = "You are a helpful AI assistant. Answer the user's last message directly."

EXPLANATION_STYLE_PROMPTS: Mapping[str, str] = {
    "summarize": "You are an expert summarizer. Provide a concise summary of the following text.",
    "explain simply": (
        "You are an expert at explaining complex topics simply. Explain the following text in a very "
        "easy to understand way, as if to a beginner."
    ),
    "funny analogy": (
        "You are an AI with a great sense of humor. Explain the following text using a creative and "
        "funny analogy."
    ),
    "expand": (
        "You are an AI that elaborates on topics. Expand on the following text, providing more detail, "
        "context, and examples."
    ),
}


def explanation_system_prompt(style_prompt: str | None) -> str:
    """Return the system prompt for a named style, or the style text itself."""

    cleaned = (style_prompt or "").strip()
    if not cleaned:
        return DEFAULT_EXPLAIN_PROMPT
    return EXPLANATION_STYLE_PROMPTS.get(cleaned.lower(), cleaned)


def build_explain_messages(text: str, style_prompt: str | None) -> list[dict[str, str]]:
    return [
        {"role": "system", "content": explanation_system_prompt(style_prompt)},
        {"role": "user", "content": f"Please address the following text:\n\n{text}"},
    ]


def build_chat_messages(history: Sequence[Mapping[str, str]]) -> list[dict[str, str]]:
    """Copy ``history`` and prepend the default system prompt when none is present."""

    messages = [{"role": str(item["role"]), "content": str(item["content"])} for item in history]
    if not any(message["role"] == "system" for message in messages):
        messages.insert(0, {"role": "system", "content": CHAT_SYSTEM_PROMPT})
    return messages


__all__ = [
    "CHAT_SYSTEM_PROMPT",
    "DEFAULT_EXPLAIN_PROMPT",
    "EXPLANATION_STYLE_PROMPTS",
    "build_chat_messages",
    "build_explain_messages",
    "explanation_system_prompt",
]
