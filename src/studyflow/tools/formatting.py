"""Plain-text rendering of tool results for history records and terminals."""

from __future__ import annotations

from typing import Sequence

from .models import Question


def format_questions(questions: Sequence[Question]) -> str:
    """Render questions as numbered text with lettered options."""

    blocks: list[str] = []
    for index, item in enumerate(questions, start=1):
        lines = [f"{index}. {item.question}"]
        for offset, option in enumerate(item.options):
            lines.append(f"   {chr(ord('A') + offset)}. {option}")
        lines.append("")
        lines.append(f"   Answer: {item.answer}")
        if item.explanation:
            lines.append(f"   Explanation: {item.explanation}")
        blocks.append("\n".join(lines))
    return "\n\n".join(blocks)


__all__ = ["format_questions"]
