"""Markdown transcript of the tool calls made during a session."""

from __future__ import annotations

import itertools
import json
import logging
from pathlib import Path

import anyio

from .config import Config
from .response import Response

logger = logging.getLogger(__name__)

_session_ordinals = itertools.count(1)


def _extension(content_type: str) -> str:
    return "jpg" if content_type == "image/jpeg" else "png"


class SessionLog:
    """Appends each call to ``session.md`` and stores snapshots/images beside it.

    File I/O runs in worker threads through :class:`anyio.Path`.
    """

    def __init__(self, folder: Path) -> None:
        self.folder = folder
        self.file = folder / "session.md"
        self._ordinal = 0

    @classmethod
    async def create(cls, config: Config) -> SessionLog:
        folder = config.output_file(f"session-{next(_session_ordinals):03d}")
        await anyio.Path(folder).mkdir(parents=True, exist_ok=True)
        logger.info(f"Session: {folder}")
        return cls(folder)

    async def log(self, response: Response) -> None:
        self._ordinal += 1
        prefix = f"{self._ordinal:03d}"
        folder = anyio.Path(self.folder)
        lines = [
            f"### Tool: {response.tool_name}",
            "",
            "- Args",
            "```json",
            json.dumps(response.tool_args, indent=2, default=str),
            "```",
        ]
        result = response.result()
        if result:
            lines += ["- Result", "```", result, "```"]

        snapshot = await response.snapshot()
        if snapshot:
            name = f"{prefix}.snapshot.md"
            await (folder / name).write_text(snapshot, encoding="utf-8")
            lines.append(f"- Snapshot: {name}")

        for image in response.images():
            name = f"{prefix}.screenshot.{_extension(image.content_type)}"
            await (folder / name).write_bytes(image.data)
            lines.append(f"- Screenshot: {name}")

        lines += ["", ""]
        async with await anyio.Path(self.file).open("a", encoding="utf-8") as f:
            await f.write("\n".join(lines))
