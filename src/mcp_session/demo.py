"""A small server exercising every feature, served by the command line tool."""

import asyncio

from .config import SessionConfig
from .jsonrpc import RequestContext
from .server import Server
from .types import (
    Completion,
    CompletionArgument,
    CompletionContext,
    PromptReference,
    Resource,
    ResourceTemplateReference,
    ToolAnnotations,
)

ITEM_COUNT = 150
GREETING_STYLES = ["friendly", "formal", "pirate"]


def build_demo_server(config: SessionConfig | None = None) -> Server:
    server = Server(
        "mcp-session-engine-demo",
        "0.1.0",
        instructions="Arithmetic tools, numbered items and a greeting prompt.",
        config=config,
    )

    @server.tool(annotations=ToolAnnotations(readOnlyHint=True, idempotentHint=True))
    async def add(a: int, b: int) -> int:
        """Add two integers."""
        return a + b

    @server.tool(annotations=ToolAnnotations(readOnlyHint=True, idempotentHint=True))
    async def divide(a: float, b: float) -> float:
        """Divide a by b."""
        return a / b

    @server.tool()
    async def echo(text: str) -> str:
        """Return the text unchanged."""
        return text

    @server.tool()
    async def count(ctx: RequestContext, to: int = 10, delay: float = 0.1) -> str:
        """Count slowly, reporting progress. Stops early when cancelled."""
        for i in range(1, to + 1):
            if ctx.cancellation.cancelled:
                return f"Stopped at {i - 1}"
            await ctx.report_progress(i, to, f"Counted to {i}")
            await asyncio.sleep(delay)
        return f"Counted to {to}"

    for n in range(ITEM_COUNT):
        server.add_resource(
            Resource(uri=f"demo://item/{n}", name=f"item-{n}", mimeType="text/plain"),
            _item_reader(n),
        )

    @server.resource_template("demo://square/{n}", mime_type="text/plain")
    async def square(n: str) -> str:
        """The square of n."""
        return str(int(n) ** 2)

    @server.prompt()
    async def greet(name: str, style: str = "friendly") -> str:
        """Greet someone."""
        match style:
            case "formal":
                return f"Please write a formal greeting addressed to {name}."
            case "pirate":
                return f"Please greet {name} like a pirate would."
            case _:
                return f"Please write a friendly greeting for {name}."

    @server.completion
    async def complete(
        ref: PromptReference | ResourceTemplateReference, argument: CompletionArgument, context: CompletionContext
    ) -> list[str] | Completion:
        if isinstance(ref, PromptReference) and ref.name == "greet" and argument.name == "style":
            return [style for style in GREETING_STYLES if style.startswith(argument.value)]
        return []

    return server


def _item_reader(n: int):
    async def read() -> str:
        return f"Item number {n}"

    return read
