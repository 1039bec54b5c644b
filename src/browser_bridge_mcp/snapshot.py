"""Page snapshot rendering: compact element refs, text formatting, overlays."""

from __future__ import annotations

import base64
import io
from typing import Any

from PIL import Image, ImageDraw, ImageFont


REF_PREFIX = "@e"


class RefManager:
    """Short ``@eN`` handles for the elements of the latest snapshot.

    Numbering restarts on :meth:`reset`, so refs handed out for an older
    capture stop resolving once the page is rendered again.
    """

    def __init__(self) -> None:
        self._by_ref: dict[str, str] = {}
        self._by_element: dict[str, str] = {}

    def reset(self) -> None:
        self._by_ref.clear()
        self._by_element.clear()

    def assign(self, element_id: str) -> str:
        ref = self._by_element.get(element_id)
        if ref is None:
            ref = f"{REF_PREFIX}{len(self._by_element) + 1}"
            self._by_element[element_id] = ref
            self._by_ref[ref] = element_id
        return ref

    def resolve(self, ref: str) -> str:
        """Element ID behind ``ref``; anything that is not a ref passes through."""
        if not ref.startswith(REF_PREFIX):
            return ref
        try:
            return self._by_ref[ref]
        except KeyError:
            raise ValueError(
                f"Unknown ref {ref}. Capture a new snapshot to refresh refs."
            ) from None


def truncate_field(text: str | None, max_len: int) -> str | None:
    """Truncate a text field to max_len chars."""
    if not text or len(text) <= max_len:
        return text
    return f"{text[:max_len]}... [{len(text)} chars total]"


def format_element(element: dict[str, Any], ref: str, max_label: int = 80) -> str:
    """Single-line description of an element, prefixed with its ref."""
    elem_type = element.get("type", "?")
    label = truncate_field(element.get("label", ""), max_label)
    state = element.get("state", {})

    parts = [f"- {ref}", elem_type]
    if label:
        parts.append(f'"{label}"')

    flags: list[str] = []
    if not state.get("enabled", True):
        flags.append("disabled")
    if state.get("checked"):
        flags.append("checked")
    if state.get("focused"):
        flags.append("focused")
    value = state.get("value")
    if value:
        flags.append(f"value={truncate_field(str(value), max_label)!r}")
    if flags:
        parts.append(f"[{' '.join(flags)}]")

    return " ".join(parts)


def render_snapshot(data: dict[str, Any], refs: RefManager) -> str:
    """Render a runner snapshot as markdown, reassigning element refs.

    Hidden elements are skipped since they cannot be targeted.
    """
    refs.reset()
    lines = ["### Page state"]
    url = data.get("url")
    title = data.get("title")
    if url:
        lines.append(f"- Page URL: {url}")
    if title:
        lines.append(f"- Page Title: {title}")

    elements = [
        el
        for el in data.get("elements", [])
        if "id" in el and el.get("state", {}).get("visible", True)
    ]
    lines.append("- Page Snapshot:")
    if not elements:
        lines.append("  (no visible elements)")
    for el in elements:
        lines.append("  " + format_element(el, refs.assign(el["id"])))
    return "\n".join(lines)


LABEL_FONT_SIZE = 12


def _label_font() -> ImageFont.FreeTypeFont | ImageFont.ImageFont:
    try:
        return ImageFont.truetype("arial.ttf", LABEL_FONT_SIZE)
    except OSError:
        return ImageFont.load_default()


def _draw_ref(
    draw: ImageDraw.ImageDraw,
    box: tuple[float, float, float, float],
    ref: str,
    font: ImageFont.FreeTypeFont | ImageFont.ImageFont,
) -> None:
    left, top = box[0], box[1]
    draw.rectangle(box, outline="red", width=2)
    text_left, text_top, text_right, text_bottom = draw.textbbox((0, 0), ref, font=font)
    text_w, text_h = text_right - text_left, text_bottom - text_top
    tag_top = max(top - text_h - 4, 0)
    draw.rectangle((left, tag_top, left + text_w + 4, tag_top + text_h + 2), fill="red")
    draw.text((left + 2, tag_top), ref, fill="white", font=font)


def annotate_screenshot(
    screenshot_b64: str,
    elements: list[dict[str, Any]],
    width: int,
    height: int,
    refs: RefManager,
) -> bytes:
    """Outline visible elements and tag each with its ref; returns a PNG.

    ``width`` and ``height`` give the viewport in CSS pixels and map element
    rects onto the captured bitmap.
    """
    image = Image.open(io.BytesIO(base64.b64decode(screenshot_b64))).convert("RGB")
    sx = image.width / width if width else 1
    sy = image.height / height if height else 1
    draw = ImageDraw.Draw(image)
    font = _label_font()

    for element in elements:
        state = element.get("state", {})
        rect = state.get("rect")
        if "id" not in element or not rect or not state.get("visible", True):
            continue
        left = rect.get("x", 0) * sx
        top = rect.get("y", 0) * sy
        box = (left, top, left + rect.get("width", 0) * sx, top + rect.get("height", 0) * sy)
        _draw_ref(draw, box, refs.assign(element["id"]), font)

    out = io.BytesIO()
    image.save(out, format="PNG")
    return out.getvalue()
