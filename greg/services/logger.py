"""Loguru sinks for the Greg server plus structured helpers for LLM calls and tool rounds."""

import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from loguru import logger

from greg.config import settings

CONSOLE_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>"
)
FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {name}:{function}:{line} - {message}"

# Stdlib loggers that flood the console at INFO
NOISY_LOGGERS = (
    "uvicorn.access",
    "sse_starlette.sse",
    "httpx",
    "httpcore",
    "openai._base_client",
    "trafilatura",
    "readability.readability",
    "asyncio",
)


def _server_record(record: dict) -> bool:
    # conversation records go to their own JSONL sink
    return "conversation_id" not in record["extra"]


def configure_logging(log_dir: str | Path | None = None) -> None:
    """Replace the default loguru handler with a console sink and a daily rotated file."""
    directory = Path(log_dir or settings.log_dir)
    directory.mkdir(parents=True, exist_ok=True)

    logger.remove()
    logger.add(
        sys.stderr,
        format=CONSOLE_FORMAT,
        level=settings.app_log_level.upper(),
        colorize=True,
        filter=_server_record,
    )
    logger.add(
        directory / "greg_{time:YYYY-MM-DD}.log",
        format=FILE_FORMAT,
        level="DEBUG",
        rotation="00:00",
        retention=settings.log_retention,
        compression="zip",
        filter=_server_record,
    )

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(settings.noisy_log_level.upper())


configure_logging()


def _stamp(**fields: Any) -> dict[str, Any]:
    return {"timestamp": datetime.now(timezone.utc).isoformat(), **fields}


def log_llm_call(
    model: str,
    caller: str,
    duration_ms: int = 0,
    status: str = "success",
    error: Optional[str] = None,
    **kwargs,
) -> None:
    """One upstream chat completion, streamed or not."""
    call = _stamp(model=model, caller=caller, duration_ms=duration_ms, status=status, **kwargs)
    if error:
        logger.error(f"LLM_CALL_FAILED: {call} error={error}")
    else:
        logger.info(f"LLM_CALL: {call}")


def log_tool_step(step_type: str, status: str, data: Optional[dict] = None) -> None:
    logger.info(f"TOOL_STEP: {_stamp(step_type=step_type, status=status, data=data)}")


def log_event(event_type: str, message: str, **kwargs) -> None:
    logger.info(f"EVENT: {_stamp(event_type=event_type, message=message, **kwargs)}")
