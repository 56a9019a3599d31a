"""
Decision providers for the confirmation points of a run.

``ConsoleConfirmation`` prompts on the terminal (full word or first letter,
``help``/``h``/``?`` prints the options for the current topic).
``AutoConfirm`` answers without asking, for unattended runs.
"""

from __future__ import annotations

import asyncio
from enum import Enum
from typing import Callable, Dict, List, Optional, Protocol, Sequence, Tuple

from database.exceptions import UserAbortError


class Decision(str, Enum):
    YES = "yes"
    NO = "no"
    SPECIFY = "specify"
    SKIP = "skip"
    END = "end"


class Confirmation(Protocol):
    async def ask(self, topic: str, question: str, choices: Sequence[Decision]) -> Decision:
        ...


HELP_WORDS = {"help", "h", "?"}

# topic -> [(decision, description)]
TOPIC_HELP: Dict[str, List[Tuple[Decision, str]]] = {
    "orphan-cleanup": [
        (Decision.YES, "drop the leftover covering indexes listed above"),
        (Decision.NO, "stop the run; nothing is dropped"),
    ],
    "collections": [
        (Decision.YES, "rebuild every collection listed above"),
        (Decision.NO, "stop the run before touching anything"),
        (Decision.SPECIFY, "decide collection by collection"),
    ],
    "collection-specify": [
        (Decision.YES, "include this collection"),
        (Decision.NO, "leave this collection out"),
        (Decision.END, "stop choosing; the remaining collections are left out"),
    ],
    "indexes": [
        (Decision.YES, "rebuild every index listed above"),
        (Decision.NO, "stop the run; completed work stays in the checkpoint"),
        (Decision.SPECIFY, "decide index by index"),
        (Decision.SKIP, "leave this collection untouched and move on"),
    ],
    "index-specify": [
        (Decision.YES, "rebuild this index"),
        (Decision.NO, "leave this index as it is"),
    ],
    "compact-collections": [
        (Decision.YES, "compact every collection listed above"),
        (Decision.NO, "stop the run"),
    ],
    "autocompact-filters": [
        (Decision.YES, "use manual compact so only the listed collections are compacted"),
        (Decision.NO, "use autoCompact anyway; it works on every collection of the node"),
    ],
    "stepdown": [
        (Decision.YES, "step the primary down so it can be compacted as a secondary"),
        (Decision.NO, "leave the primary alone"),
    ],
}


def match_choice(answer: str, choices: Sequence[Decision]) -> Optional[Decision]:
    text = (answer or "").strip().lower()
    if not text:
        return None
    for choice in choices:
        if text == choice.value:
            return choice
    for choice in choices:
        if len(text) == 1 and choice.value.startswith(text):
            return choice
    return None


class ConsoleConfirmation:
    def __init__(
        self,
        input_func: Callable[[str], str] = input,
        output_func: Callable[[str], None] = print,
    ):
        self._input = input_func
        self._output = output_func

    def _show_help(self, topic: str, choices: Sequence[Decision]) -> None:
        described = dict(TOPIC_HELP.get(topic, []))
        self._output("Available options:")
        for choice in choices:
            description = described.get(choice, "")
            line = f"  {choice.value} ({choice.value[0]})"
            self._output(f"{line} - {description}" if description else line)
        self._output("  help (h, ?) - show this list")

    async def ask(self, topic: str, question: str, choices: Sequence[Decision]) -> Decision:
        options = "/".join(choice.value for choice in choices)
        prompt = f"{question} [{options}] "
        while True:
            try:
                answer = await asyncio.to_thread(self._input, prompt)
            except EOFError as exc:
                raise UserAbortError("No answer (input closed)", topic=topic) from exc
            if answer.strip().lower() in HELP_WORDS:
                self._show_help(topic, choices)
                continue
            decision = match_choice(answer, choices)
            if decision is not None:
                return decision
            self._output(f"Invalid input. Choose one of: {', '.join(c.value for c in choices)}")
            self._output("Type 'help' to see what each option does.")


class AutoConfirm:
    """Answers ``yes`` (or the first offered choice) to every question."""

    def __init__(self, answer: Decision = Decision.YES):
        self._answer = answer

    async def ask(self, topic: str, question: str, choices: Sequence[Decision]) -> Decision:
        if self._answer in choices:
            return self._answer
        return choices[0]
