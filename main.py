"""Greg - streaming chat with web verification

Simple CLI for running one chat turn in the terminal.
"""

import argparse
import asyncio
import json
import sys

from greg.agents.orchestrator import ChatOrchestrator
from greg.models.schemas import ChatMessage, ChatRequest
from greg.services.streaming import StreamWriter
from greg.config import settings


def render_frame(data: str, show_status: bool) -> str:
    """Visible text of one frame payload; status markers only with ``show_status``."""
    if data == "[DONE]":
        return "\n"
    payload = json.loads(data)
    meta = payload.get("meta")
    if meta:
        if meta.get("type") == "title":
            return f"[title] {meta.get('title')}\n"
        return f"\n[{meta.get('type')}] {json.dumps(meta, ensure_ascii=False)}\n"
    content = payload["choices"][0]["delta"].get("content") or ""
    if content.startswith("<greg_status"):
        return f"\n[status] {content}\n" if show_status else ""
    return content


async def run_chat(message: str, model: str | None, ui_language: str, show_status: bool):
    """Run one chat turn and print the streamed answer."""
    request = ChatRequest(
        model=model or settings.default_model,
        messages=[ChatMessage(role="user", content=message)],
    )
    writer = StreamWriter(send_detailed_status=show_status)
    orchestrator = ChatOrchestrator()
    task = asyncio.create_task(orchestrator.run(request, writer, ui_language=ui_language))

    async for frame in writer:
        print(render_frame(frame.data(), show_status), end="", flush=True)
    await task


def main():
    parser = argparse.ArgumentParser(description="Greg chat CLI")
    parser.add_argument("--message", "-q", required=True, help="User message")
    parser.add_argument("--model", "-m", help="Model to use (default: from config)")
    parser.add_argument("--lang", default="en", help="UI language (en or fr)")
    parser.add_argument("--status", action="store_true", help="Print detailed status markers")

    args = parser.parse_args()

    try:
        asyncio.run(run_chat(args.message, args.model, args.lang, args.status))
    except KeyboardInterrupt:
        sys.exit(130)


if __name__ == "__main__":
    main()
