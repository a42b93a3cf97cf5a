"""Prompt rendering for the supported instruct model families.

Which template a model gets and which end-of-turn marker ends its replies
are looked up in two independent tables, so a new family is a new row
rather than a new branch.
"""

from collections.abc import Callable, Sequence
from dataclasses import dataclass

from chat_gateway.errors import UnknownRoleError, UnsupportedModelError
from shared.schemas import ChatMessage

ROLE_SYSTEM = "system"
ROLE_USER = "user"
ROLE_ASSISTANT = "assistant"

_INSTRUCT_TAG = "-instruct"


@dataclass(frozen=True)
class ModelPattern:
    """Case-insensitive match on a model identifier."""

    value: str
    exact: bool = False

    def matches(self, model: str) -> bool:
        model = model.lower()
        if self.exact:
            return model == self.value
        return model.startswith(self.value)


Template = Callable[[Sequence[ChatMessage], str | None], str]


def render_header_delimited(messages: Sequence[ChatMessage], context: str | None = None) -> str:
    """Llama 3 instruct format.

    Roles are written verbatim, so tool turns such as ``ipython`` pass
    through unchanged.
    """
    parts = ["<|begin_of_text|>"]
    for message in messages:
        parts.append(f"<|start_header_id|>{message.role}<|end_header_id|>\n\n")
        parts.append(message.content)
        parts.append("<|eot_id|>")
    parts.append("<|start_header_id|>assistant<|end_header_id|>\n\n")
    return "".join(parts)


def render_user_assistant(messages: Sequence[ChatMessage], context: str | None = None) -> str:
    """Phi-3 instruct format. System turns are sent as user turns; other roles are dropped."""
    parts = []
    for message in messages:
        if message.role in (ROLE_USER, ROLE_SYSTEM):
            parts.append("<|user|>\n")
        elif message.role == ROLE_ASSISTANT:
            parts.append("<|assistant|>\n")
        else:
            continue
        parts.append(message.content)
        parts.append("<|end|>\n<|assistant|>\n")
    return "".join(parts)


_TURN_LABELS = {
    ROLE_SYSTEM: "System",
    ROLE_USER: "User",
    ROLE_ASSISTANT: "Assistant",
}


def render_labeled_turns(messages: Sequence[ChatMessage], context: str | None = None) -> str:
    """nvidia/Llama3-ChatQA-1.5 format.

    ``context`` (retrieved documents) becomes its own paragraph right after
    the system turn.
    """
    parts = []
    for message in messages:
        label = _TURN_LABELS.get(message.role)
        if label is None:
            raise UnknownRoleError(message.role)
        parts.append(f"{label}: {message.content}\n\n")
        if message.role == ROLE_SYSTEM and context is not None:
            parts.append(f"{context}\n\n")
    parts.append("Assistant: ")
    return "".join(parts)


def render_passthrough(messages: Sequence[ChatMessage]) -> str:
    return "\n".join(message.content for message in messages)


@dataclass(frozen=True)
class TemplateRule:
    pattern: ModelPattern
    render: Template


@dataclass(frozen=True)
class StopMarkerRule:
    pattern: ModelPattern
    marker: str


TEMPLATE_RULES: tuple[TemplateRule, ...] = (
    TemplateRule(ModelPattern("llama-3"), render_header_delimited),
    TemplateRule(ModelPattern("phi-3"), render_user_assistant),
    TemplateRule(ModelPattern("llama3-chatqa-1.5-8b", exact=True), render_labeled_turns),
)

STOP_MARKER_RULES: tuple[StopMarkerRule, ...] = (
    StopMarkerRule(ModelPattern("llama"), "<|eot_id|>"),
    StopMarkerRule(ModelPattern("phi-3"), "<|end|>"),
)


def uses_chat_template(model: str) -> bool:
    """Instruct models get a chat template, base models get passthrough."""
    if _INSTRUCT_TAG in model.lower():
        return True
    return any(rule.pattern.exact and rule.pattern.matches(model) for rule in TEMPLATE_RULES)


def apply_chat_template(
    model: str,
    messages: Sequence[ChatMessage],
    context: str | None = None,
) -> str:
    for rule in TEMPLATE_RULES:
        if rule.pattern.matches(model):
            return rule.render(messages, context)
    raise UnsupportedModelError(model)


def render_prompt(
    model: str,
    messages: Sequence[ChatMessage],
    context: str | None = None,
) -> str:
    if uses_chat_template(model):
        return apply_chat_template(model, messages, context)
    return render_passthrough(messages)


def resolve_stop_marker(model: str) -> str:
    for rule in STOP_MARKER_RULES:
        if rule.pattern.matches(model):
            return rule.marker
    raise UnsupportedModelError(model)
