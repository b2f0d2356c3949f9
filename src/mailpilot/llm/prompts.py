"""Prompt text for classification, drafting and draft refinement.

Drafting prompts carry the operator profile (name, current status,
signature policy) and the operator's background notes: every *.md file in
the configured context directory, concatenated in name order.
"""

from __future__ import annotations

from collections.abc import Sequence
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING

from mailpilot.core.logging import get_logger

if TYPE_CHECKING:
    from mailpilot.config_schema import OperatorConfig
    from mailpilot.mail.models import Email, Thread

logger = get_logger(__name__)

CLASSIFICATION_GUIDELINES = """\
Classification guidelines:
1. Choose "ARCHIVE" when the thread is promotional or automated, such as:
 - Marketing newsletters or promotional offers
 - Automated notifications from services or social networks
 - System-generated reports, receipts and subscription updates
 - "No-reply" messages
2. Choose "RESPOND" when any of these hold:
 - The email is from a real person and is part of a conversation
 - It contains a direct question or request for the operator
 - It needs the operator's input, decision or acknowledgment
 - It mentions deadlines or other time-sensitive matters"""

NEED_INFO_GUIDELINE = """\
3. Choose "NEED_INFO" only when a reply is needed but you cannot write a
   useful one without facts only the operator knows. List at most three
   short, specific questions."""

CLASSIFICATION_FORMAT = """\
Respond ONLY with a JSON object, no text before or after it and no code fences:
{{"action": {actions}, "reason": "one sentence explaining the decision"{questions}}}"""

COMPOSITION_GUIDELINES = """\
Composition guidelines:
1. Be concise and respect the recipient's time
2. Write in the same language and at the same formality level as the thread
3. Use short, well-organised paragraphs separated by blank lines
4. Skip filler, empty pleasantries and restating obvious points
5. Write in the first person, in the operator's own style as seen in earlier replies
6. Use background information only when it is relevant, and never invent facts"""

RESPONSE_FORMAT = """\
Response format: plain text only. No markdown, no labels, no To/From/Subject
lines. Include links as plain URLs. Output just the email body."""


def format_email(email: Email) -> str:
    sent = email.sent_at.strftime("%Y-%m-%d %H:%M")
    return f"From: {email.sender}\nTo: {email.to}\nDate: {sent}\nSubject: {email.subject}\n\n{email.body}"


def thread_messages(thread: Thread) -> list[dict[str, str]]:
    """Map a thread to chat messages: the operator's emails are the assistant's turns."""
    messages = []
    for email in thread.emails:
        if email.authored_by_operator:
            messages.append({"role": "assistant", "content": email.body})
        else:
            messages.append({"role": "user", "content": format_email(email)})
    return messages


def format_answers(answers: Sequence[tuple[str, str]]) -> str:
    lines = ["Additional information from the operator:"]
    for question, answer in answers:
        lines.append(f"Q: {question}\nA: {answer}")
    return "\n".join(lines)


class PromptBuilder:
    """Builds prompt messages for one operator.

    Args:
        operator: Operator profile from config
        context_dir: Directory of *.md background files
    """

    def __init__(self, operator: OperatorConfig, context_dir: str | Path):
        self.operator = operator
        self.context_dir = Path(context_dir)
        self._context: str | None = None

    def background_context(self) -> str:
        """Concatenated *.md background files, loaded once."""
        if self._context is not None:
            return self._context

        if not self.context_dir.is_dir():
            logger.error("context_dir_missing", path=str(self.context_dir))
            self._context = ""
            return self._context

        parts = []
        for path in sorted(self.context_dir.glob("*.md")):
            try:
                parts.append(f"### {path.stem}\n{path.read_text(encoding='utf-8').strip()}")
            except OSError as e:
                logger.error("context_file_unreadable", path=str(path), error=str(e))
        self._context = "\n\n".join(parts)
        logger.info("context_loaded", files=len(parts), chars=len(self._context))
        return self._context

    def _status_lines(self) -> str:
        lines = [f"Current status ({datetime.now(UTC).isoformat(timespec='minutes')}):"]
        if self.operator.location:
            lines.append(f"- Location: {self.operator.location}")
        if self.operator.focus:
            lines.append(f"- Focus: {self.operator.focus}")
        return "\n".join(lines)

    def _signature_policy(self) -> str:
        if self.operator.use_signature and self.operator.signature:
            return f"Include this signature:\n{self.operator.signature}"
        return "Do not add any signature."

    # -- classification ----------------------------------------------------

    def classification_messages(
        self,
        thread: Thread,
        answers: Sequence[tuple[str, str]] = (),
        allow_questions: bool = True,
    ) -> list[dict[str, str]]:
        name = self.operator.full_name or self.operator.email
        actions = '"RESPOND" | "ARCHIVE" | "NEED_INFO"' if allow_questions else '"RESPOND" | "ARCHIVE"'
        questions = ', "questions": ["..."]' if allow_questions else ""

        sections = [
            f"You triage email for {name}. Decide whether the latest message in "
            "this thread needs a reply from them.",
            CLASSIFICATION_GUIDELINES,
        ]
        if allow_questions:
            sections.append(NEED_INFO_GUIDELINE)
        sections.append(CLASSIFICATION_FORMAT.format(actions=actions, questions=questions))
        system = "\n\n".join(sections)

        messages = [{"role": "system", "content": system}, *thread_messages(thread)]
        if answers:
            messages.append({"role": "user", "content": format_answers(answers)})
        messages.append({"role": "user", "content": "Classify this thread now. JSON only."})
        return messages

    # -- drafting ----------------------------------------------------------

    def drafting_system(self) -> str:
        name = self.operator.full_name or self.operator.email
        sections = [f"You are the email assistant of {name}. You write replies on their behalf."]
        context = self.background_context()
        if context:
            sections.append(f"## Background\n{context}")
        return "\n\n".join(sections)

    def drafting_instruction(self, thread: Thread) -> str:
        return "\n\n".join(
            [
                self._status_lines(),
                f'Write a reply to the thread "{thread.subject}".',
                COMPOSITION_GUIDELINES,
                RESPONSE_FORMAT,
                self._signature_policy(),
            ]
        )

    def drafting_messages(
        self,
        thread: Thread,
        history: Sequence[dict[str, str]] = (),
        answers: Sequence[tuple[str, str]] = (),
    ) -> list[dict[str, str]]:
        messages = [{"role": "system", "content": self.drafting_system()}, *history]
        messages.extend(thread_messages(thread))
        if answers:
            messages.append({"role": "user", "content": format_answers(answers)})
        messages.append({"role": "user", "content": self.drafting_instruction(thread)})
        return messages

    def refinement_messages(
        self,
        thread: Thread,
        current_draft: str,
        edit_history: Sequence[str],
    ) -> list[dict[str, str]]:
        """Drafting prompt plus the current draft and every edit requested so far."""
        messages = self.drafting_messages(thread)
        messages.append({"role": "assistant", "content": current_draft})
        edits = "\n".join(f"{i}. {edit}" for i, edit in enumerate(edit_history, 1))
        messages.append(
            {
                "role": "user",
                "content": (
                    f"Revise your reply applying these edit instructions in order:\n{edits}\n\n"
                    f"{RESPONSE_FORMAT}\n{self._signature_policy()}"
                ),
            }
        )
        return messages
