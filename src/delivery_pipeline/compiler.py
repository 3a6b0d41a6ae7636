# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Template compilation for email content.

The pipeline only depends on the :class:`TemplateCompiler` protocol. The
bundled :class:`SubstitutionCompiler` is a small deterministic renderer:

- ``{{ path.to.value }}`` inserts an HTML-escaped value from the payload
- ``{{{ path }}}`` inserts the raw value
- a layout wraps the rendered body at its ``{{{body}}}`` slot

Any failure is surfaced as a single ``CompilationFailed``.
"""

from __future__ import annotations

import html
import re
from typing import Any, Protocol

from .errors import CompilationFailed
from .models import CompiledEmail, Layout

_TOKEN = re.compile(r"\{\{\{\s*([\w.\-]+)\s*\}\}\}|\{\{\s*([\w.\-]+)\s*\}\}")
_TAG = re.compile(r"<[^>]+>")
_BLANK_LINES = re.compile(r"\n\s*\n+")
BODY_SLOT = "body"


class TemplateCompiler(Protocol):
    async def compile(
        self,
        environment_id: str,
        organization_id: str,
        user_id: str | None,
        template_payload: dict[str, Any],
    ) -> CompiledEmail: ...


class LayoutStore(Protocol):
    async def get_layout(self, environment_id: str, layout_id: str) -> Layout | None: ...

    async def get_default_layout(self, environment_id: str) -> Layout | None: ...


def lookup(data: Any, path: str) -> Any:
    """Resolve a dotted ``path`` in nested dicts/lists; missing keys give None."""
    current = data
    for part in path.split("."):
        if isinstance(current, dict):
            current = current.get(part)
        elif isinstance(current, (list, tuple)) and part.isdigit():
            index = int(part)
            current = current[index] if index < len(current) else None
        else:
            current = getattr(current, part, None)
        if current is None:
            return None
    return current


def _stringify(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def render(template: str, variables: dict[str, Any], *, escape: bool = True) -> str:
    """Render ``template`` against ``variables``."""

    def _replace(match: re.Match[str]) -> str:
        raw_path, escaped_path = match.group(1), match.group(2)
        if raw_path:
            return _stringify(lookup(variables, raw_path))
        value = _stringify(lookup(variables, escaped_path))
        return html.escape(value) if escape else value

    return _TOKEN.sub(_replace, template)


def html_to_text(markup: str) -> str:
    text = _TAG.sub("\n", markup)
    text = html.unescape(text)
    lines = [line.strip() for line in text.splitlines()]
    return _BLANK_LINES.sub("\n\n", "\n".join(lines)).strip()


def _content_source(content: Any) -> str:
    """Editor content arrives either as a string or as a list of blocks."""
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for block in content:
            if isinstance(block, dict):
                parts.append(f"<p>{block.get('content', '')}</p>")
            else:
                parts.append(str(block))
        return "\n".join(parts)
    raise CompilationFailed(f"Unsupported template content of type {type(content).__name__}")


class SubstitutionCompiler:
    """Default :class:`TemplateCompiler` with layout support."""

    def __init__(self, layouts: LayoutStore | None = None):
        self.layouts = layouts

    async def compile(
        self,
        environment_id: str,
        organization_id: str,
        user_id: str | None,
        template_payload: dict[str, Any],
    ) -> CompiledEmail:
        try:
            variables = dict(template_payload.get("payload") or {})
            subject = render(template_payload.get("subject") or "", variables, escape=False)
            sender_name = render(template_payload.get("senderName") or "", variables, escape=False)
            preheader = render(template_payload.get("preheader") or "", variables)
            body = render(_content_source(template_payload.get("content")), variables)
            if template_payload.get("contentType") == "customHtml":
                layout = None
            else:
                layout = await self._resolve_layout(environment_id, template_payload.get("layoutId"))
            if layout is not None:
                layout_vars = {**variables, BODY_SLOT: body, "subject": subject, "preheader": preheader}
                html_body = render(layout.content, layout_vars)
            else:
                html_body = body
        except CompilationFailed:
            raise
        except Exception as exc:
            raise CompilationFailed(str(exc)) from exc

        return CompiledEmail(
            subject=subject,
            html_body=html_body,
            plain_text=html_to_text(html_body),
            sender_name=sender_name or None,
        )

    async def _resolve_layout(self, environment_id: str, layout_id: str | None) -> Layout | None:
        if self.layouts is None:
            return None
        if layout_id:
            layout = await self.layouts.get_layout(environment_id, layout_id)
            if layout is None:
                raise CompilationFailed(f"Layout {layout_id} not found")
            return layout
        return await self.layouts.get_default_layout(environment_id)


__all__ = ["LayoutStore", "SubstitutionCompiler", "TemplateCompiler", "html_to_text", "lookup", "render"]
