"""Tests for the pydantic-ai sampling handler."""

import asyncio

import pytest
from pydantic_ai.messages import ModelRequest, ModelResponse, SystemPromptPart, TextPart, UserPromptPart
from pydantic_ai.models.test import TestModel as FakeModel

from mcp_session.jsonrpc import JSONRPC_INVALID_PARAMS, JsonRpcException, RequestContext
from mcp_session.sampling import PydanticAISamplingHandler, to_message_history
from mcp_session.types import (
    CreateMessageRequestParams,
    ImageContent,
    ModelHint,
    ModelPreferences,
    SamplingMessage,
    TextContent,
)


def message(role: str, text: str) -> SamplingMessage:
    return SamplingMessage(role=role, content=TextContent(text=text))


def context() -> RequestContext:
    return RequestContext(connection=None, request_id=7, method="sampling/createMessage")


class TestToMessageHistory:
    """Tests for converting sampling messages."""

    def test_conversation(self):
        """Earlier turns become history and the last user turn the prompt."""
        params = CreateMessageRequestParams(
            messages=[message("user", "Hi"), message("assistant", "Hello!"), message("user", "How are you?")],
            systemPrompt="Be brief.",
            maxTokens=50,
        )
        history, prompt = to_message_history(params)

        assert prompt == "How are you?"
        assert [type(m) for m in history] == [ModelRequest, ModelRequest, ModelResponse]
        assert isinstance(history[0].parts[0], SystemPromptPart)
        assert history[0].parts[0].content == "Be brief."
        assert isinstance(history[1].parts[0], UserPromptPart)
        assert history[1].parts[0].content == "Hi"
        assert history[2].parts == [TextPart(content="Hello!")]

    def test_last_message_must_be_from_user(self):
        """The model has nothing to answer when the assistant spoke last."""
        params = CreateMessageRequestParams(
            messages=[message("user", "Hi"), message("assistant", "Hello!")],
            maxTokens=50,
        )
        with pytest.raises(JsonRpcException) as exc_info:
            to_message_history(params)
        assert exc_info.value.code == JSONRPC_INVALID_PARAMS

    def test_images_are_refused(self):
        """Only text can be sampled."""
        params = CreateMessageRequestParams(
            messages=[SamplingMessage(role="user", content=ImageContent(data="AAAA", mimeType="image/png"))],
            maxTokens=50,
        )
        with pytest.raises(JsonRpcException) as exc_info:
            to_message_history(params)
        assert exc_info.value.code == JSONRPC_INVALID_PARAMS


class TestPydanticAISamplingHandler:
    """Tests for PydanticAISamplingHandler."""

    async def test_answers_with_the_model(self):
        """The agent's output is returned as the assistant message."""
        handler = PydanticAISamplingHandler(FakeModel(custom_output_text="Fine, thanks."))
        params = CreateMessageRequestParams(messages=[message("user", "How are you?")], maxTokens=50)

        res = await handler(context(), params)

        assert res.role == "assistant"
        assert res.content == TextContent(text="Fine, thanks.")
        assert res.model == "test"
        assert res.stopReason == "endTurn"

    def test_hints_choose_the_model(self):
        """A hint picks the first model whose name contains it."""
        default, small = FakeModel(), FakeModel()
        handler = PydanticAISamplingHandler(default, hint_models={"claude-3-5-haiku": small})

        hinted = ModelPreferences(hints=[ModelHint(name="gpt"), ModelHint(name="haiku")])
        assert handler.choose_model(hinted) is small
        assert handler.choose_model(ModelPreferences(hints=[ModelHint(name="gpt")])) is default
        assert handler.choose_model(None) is default

    async def test_serves_a_server_session(self, demo_server, connect):
        """A client can answer the server's sampling requests with the handler."""
        handler = PydanticAISamplingHandler(FakeModel(custom_output_text="42"))
        client = await connect(demo_server, sampling_callback=handler)
        await client.initialize()
        await asyncio.sleep(0.01)

        res = await demo_server.sessions[0].create_message(
            CreateMessageRequestParams(messages=[message("user", "The answer?")], maxTokens=10)
        )
        assert res.content == TextContent(text="42")
