"""Serving `sampling/createMessage` with a pydantic-ai agent.

Example:
    ```python
    handler = PydanticAISamplingHandler(
        "anthropic:claude-3-7-sonnet-latest",
        hint_models={"claude-3-5-haiku-latest": "anthropic:claude-3-5-haiku-latest"},
    )
    session = ClientSession(transport, sampling_callback=handler)
    ```
"""

import logging

import logfire
from pydantic_ai import Agent
from pydantic_ai.messages import (
    ModelMessage,
    ModelRequest,
    ModelResponse,
    SystemPromptPart,
    TextPart,
    UserPromptPart,
)
from pydantic_ai.models import Model
from pydantic_ai.settings import ModelSettings

from .jsonrpc import JSONRPC_INVALID_PARAMS, JsonRpcException, RequestContext
from .types import (
    CreateMessageRequestParams,
    CreateMessageResult,
    ModelPreferences,
    SamplingMessage,
    TextContent,
)

logger = logging.getLogger(__name__)


def _model_name(model: Model | str) -> str:
    return model if isinstance(model, str) else model.model_name


def _text(message: SamplingMessage) -> str:
    if not isinstance(message.content, TextContent):
        raise JsonRpcException(
            f"Only text content can be sampled, got {message.content.type}",
            JSONRPC_INVALID_PARAMS,
        )
    return message.content.text


def to_message_history(params: CreateMessageRequestParams) -> tuple[list[ModelMessage], str]:
    """Split sampling messages into a pydantic-ai history and the final user prompt."""
    if not params.messages or params.messages[-1].role != "user":
        raise JsonRpcException("The last sampling message must come from the user", JSONRPC_INVALID_PARAMS)

    history: list[ModelMessage] = []
    if params.systemPrompt:
        history.append(ModelRequest(parts=[SystemPromptPart(content=params.systemPrompt)]))
    for message in params.messages[:-1]:
        text = _text(message)
        if message.role == "user":
            history.append(ModelRequest(parts=[UserPromptPart(content=text)]))
        else:
            history.append(ModelResponse(parts=[TextPart(content=text)]))
    return history, _text(params.messages[-1])


class PydanticAISamplingHandler:
    """A sampling callback backed by a pydantic-ai agent.

    Args:
        model: The model used when no preference hint matches
        hint_models: Models selectable through `modelPreferences.hints`. A hint
            matches when it is a substring of the key.
    """

    def __init__(self, model: Model | str, hint_models: dict[str, Model | str] | None = None):
        self.model = model
        self.hint_models = hint_models or {}
        self.agent = Agent(model, instrument=True)

    def choose_model(self, preferences: ModelPreferences | None) -> Model | str:
        if preferences is not None:
            for hint in preferences.hints or ():
                if not hint.name:
                    continue
                for name, model in self.hint_models.items():
                    if hint.name in name:
                        return model
        return self.model

    async def __call__(self, ctx: RequestContext, params: CreateMessageRequestParams) -> CreateMessageResult:
        history, prompt = to_message_history(params)
        model = self.choose_model(params.modelPreferences)

        settings = ModelSettings(max_tokens=params.maxTokens)
        if params.temperature is not None:
            settings["temperature"] = params.temperature
        if params.stopSequences:
            settings["stop_sequences"] = params.stopSequences

        with logfire.span("sampling/createMessage {model=}", model=_model_name(model)):
            result = await self.agent.run(
                prompt,
                message_history=history,
                model=model,
                model_settings=settings,
            )
        logger.debug("Sampled a message", extra={"model": _model_name(model), "requestId": ctx.request_id})
        return CreateMessageResult(
            model=_model_name(model),
            role="assistant",
            content=TextContent(text=result.output),
            stopReason="endTurn",
        )
