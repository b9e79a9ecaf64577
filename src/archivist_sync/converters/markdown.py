"""Rich-text canonicalisation between local HTML and remote Markdown.

Local pages store descriptions as HTML; the remote API stores Markdown.
Comparisons go through ``canonical_text`` so the two representations of the
same content are never reported as different.
"""

import html
import re
from typing import Any, Callable

import mistune

_SCRIPT = re.compile(r"<script[\s\S]*?</script>", re.IGNORECASE)
_LABELLED_REF = re.compile(r"@UUID\[[^\]]+\]\{([^}]*)\}")
_BARE_REF = re.compile(r"@UUID\[[^\]]+\]")
_DATA_ATTR = re.compile(r"\sdata-[a-zA-Z-]+=\"[^\"]*\"")
_ANCHOR = re.compile(
    r"<a\s[^>]*href=\"([^\"]*)\"[^>]*>(.*?)</a>", re.IGNORECASE | re.DOTALL
)
_HEADING = re.compile(r"<h([1-6])[^>]*>(.*?)</h\1>", re.IGNORECASE | re.DOTALL)
_ANY_TAG = re.compile(r"<[^>]+>")
_HTML_HINT = re.compile(r"<[a-zA-Z][^>]*>")
_CROSSLINK = re.compile(r"@UUID\[([^\]]+)\](?:\{([^}]*)\})?")

_markdown_to_html = mistune.create_markdown(
    escape=False, plugins=["strikethrough", "table"]
)
_markdown_ast = mistune.create_markdown(
    renderer="ast", plugins=["strikethrough", "table"]
)


def looks_like_html(text: str) -> bool:
    """True when *text* contains at least one HTML start tag."""
    return bool(_HTML_HINT.search(text or ""))


def strip_host_markup(text: str) -> str:
    """Remove scripts, ``data-*`` attributes and ``@UUID`` tokens.

    Labelled references (``@UUID[Actor.x]{Bob}``) keep their label.
    """
    s = _SCRIPT.sub("", str(text or ""))
    s = _LABELLED_REF.sub(r"\1", s)
    s = _BARE_REF.sub("", s)
    return _DATA_ATTR.sub("", s).strip()


def html_to_markdown(text: str) -> str:
    """Convert the small HTML subset used by journal pages into Markdown.

    Handles paragraphs, headings, emphasis, links, line breaks and lists;
    any other tag is dropped and entities are unescaped.
    """
    s = strip_host_markup(text).replace("\r\n", "\n")
    s = _HEADING.sub(
        lambda m: "#" * int(m.group(1)) + " " + m.group(2).strip() + "\n\n", s
    )
    s = _ANCHOR.sub(lambda m: f"[{m.group(2)}]({m.group(1)})", s)
    for pattern, repl in (
        (r"</?(strong|b)>", "**"),
        (r"</?(em|i)>", "_"),
        (r"<p[^>]*>", ""),
        (r"</p>", "\n\n"),
        (r"<li[^>]*>", "- "),
        (r"</li>", "\n"),
        (r"<(ul|ol)[^>]*>", ""),
        (r"</(ul|ol)>", "\n"),
        (r"<br\s*/?>", "\n"),
    ):
        s = re.sub(pattern, repl, s, flags=re.IGNORECASE)
    s = html.unescape(_ANY_TAG.sub("", s))
    s = re.sub(r"\n{3,}", "\n\n", s)
    return s.strip()


def markdown_to_html(text: str) -> str:
    """Render Markdown to HTML for local rich-text pages."""
    if not text:
        return ""
    result: str = _markdown_to_html(text)  # type: ignore[assignment]
    return result.strip()


# Tokens after which a line break is emitted in plain text
_BLOCK_TOKENS = frozenset(
    {
        "paragraph",
        "heading",
        "block_text",
        "block_code",
        "block_quote",
        "block_html",
        "list_item",
        "thematic_break",
        "table_row",
        "table_head",
    }
)


def _plain_from_tokens(tokens: list[dict[str, Any]]) -> str:
    parts: list[str] = []
    for token in tokens:
        token_type = token.get("type")
        match token_type:
            case "softbreak":
                parts.append(" ")
            case "linebreak":
                parts.append("\n")
            case "image" | "blank_line":
                pass
            case "inline_html" | "block_html":
                parts.append(_ANY_TAG.sub("", token.get("raw", "")))
            case "table_cell":
                parts.append(_plain_from_tokens(token.get("children", [])))
                parts.append(" ")
            case _:
                if "children" in token:
                    parts.append(_plain_from_tokens(token["children"]))
                elif "raw" in token:
                    parts.append(token["raw"])
        if token_type in _BLOCK_TOKENS:
            parts.append("\n")
    return "".join(parts)


def markdown_to_plain_text(text: str) -> str:
    """Strip Markdown syntax, keeping only the readable text."""
    if not text:
        return ""
    tokens = _markdown_ast(text)
    return html.unescape(_plain_from_tokens(tokens))  # type: ignore[arg-type]


def canonical_text(value: Any) -> str:
    """Canonical plain-text form used to compare descriptions.

    HTML is first converted to Markdown; the Markdown is reduced to plain
    text; every line has its whitespace collapsed and blank lines are
    dropped. ``None`` and non-strings become ``""``.
    """
    if not isinstance(value, str) or not value.strip():
        return ""
    markdown = html_to_markdown(value) if looks_like_html(value) else value
    plain = markdown_to_plain_text(markdown)
    lines = (" ".join(line.split()) for line in plain.splitlines())
    return "\n".join(line for line in lines if line)


def resolve_crosslinks(
    markdown: str, lookup: Callable[[str], str | None] | None
) -> str:
    """Replace ``@UUID[...]`` references with ``[[remote-id]]`` wikilinks.

    References whose target is not bound remotely are left untouched.

    Args:
        markdown: Text that may contain host references.
        lookup: Maps a local reference to its bound remote id, or ``None``.
    """
    if lookup is None:
        return markdown

    def _replace(match: re.Match) -> str:
        remote_id = lookup(match.group(1))
        if remote_id:
            return f"[[{remote_id}]]"
        return match.group(0)

    return _CROSSLINK.sub(_replace, str(markdown or ""))
