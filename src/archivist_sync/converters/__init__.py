"""Format conversion between local HTML pages and remote Markdown."""

from .markdown import (
    canonical_text,
    html_to_markdown,
    looks_like_html,
    markdown_to_html,
    markdown_to_plain_text,
    resolve_crosslinks,
    strip_host_markup,
)

__all__ = [
    "canonical_text",
    "html_to_markdown",
    "looks_like_html",
    "markdown_to_html",
    "markdown_to_plain_text",
    "resolve_crosslinks",
    "strip_host_markup",
]
