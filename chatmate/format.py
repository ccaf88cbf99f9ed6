"""Markdown to Telegram-flavoured HTML conversion."""

from collections import deque


def escape_html(s: str) -> str:
    """Escape the three characters Telegram HTML cares about."""
    return s.replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;")


def md_to_telegram_html(md: str) -> str:
    """Convert markdown to Telegram-compatible HTML.

    Supports **bold**, *italic*, `code`, ```pre```, [links](url),
    ~~strikethrough~~, > blockquotes and # headers (rendered bold).
    """
    chars = deque(md)
    out: list[str] = []
    code_block: list[str] = []
    in_code_block = False
    line_start = True

    def peek() -> str | None:
        return chars[0] if chars else None

    while chars:
        ch = chars.popleft()

        if ch == "`" and peek() == "`":
            chars.popleft()
            if peek() == "`":
                chars.popleft()
                if not in_code_block:
                    in_code_block = True
                    code_block.clear()
                    _take_until(chars, "\n")  # language tag
                    out.append("<pre>")
                else:
                    in_code_block = False
                    out.append(escape_html("".join(code_block)))
                    out.append("</pre>")
                continue
            out.append("``")
            continue

        if in_code_block:
            code_block.append(ch)
            continue

        if ch == "`":
            out.append(f"<code>{escape_html(_take_until(chars, '`'))}</code>")
            continue

        if ch == "*" and peek() == "*":
            chars.popleft()
            out.append(f"<b>{escape_html(_take_until_marker(chars, '**'))}</b>")
            continue

        if ch == "*":
            out.append(f"<i>{escape_html(_take_until_marker(chars, '*'))}</i>")
            continue

        if ch == "~" and peek() == "~":
            chars.popleft()
            out.append(f"<s>{escape_html(_take_until_marker(chars, '~~'))}</s>")
            continue

        if ch == "[":
            text = _take_until(chars, "]")
            if peek() == "(":
                chars.popleft()
                url = _take_until(chars, ")")
                out.append(f'<a href="{escape_html(url)}">{escape_html(text)}</a>')
            else:
                out.append(f"[{escape_html(text)}]")
            continue

        if line_start and ch == "#":
            while peek() in ("#", " "):
                chars.popleft()
            out.append(f"<b>{escape_html(_take_until(chars, chr(10)))}</b>\n")
            line_start = True
            continue

        if line_start and ch == ">":
            if peek() == " ":
                chars.popleft()
            out.append(f"<blockquote>{escape_html(_take_until(chars, chr(10)))}</blockquote>\n")
            line_start = True
            continue

        if ch == "\n":
            out.append("\n")
            line_start = True
            continue

        line_start = False
        out.append(escape_html(ch))

    if in_code_block:
        out.append(escape_html("".join(code_block)))
        out.append("</pre>")

    return "".join(out)


def _take_until(chars: deque, stop: str) -> str:
    """Consume characters up to and including `stop`; return those before it."""
    taken = []
    while chars:
        c = chars.popleft()
        if c == stop:
            break
        taken.append(c)
    return "".join(taken)


def _take_until_marker(chars: deque, marker: str) -> str:
    """Consume characters up to and including `marker`; return those before it."""
    taken: list[str] = []
    while chars:
        if chars[0] != marker[0]:
            taken.append(chars.popleft())
            continue
        consumed = []
        matched = True
        for expected in marker:
            if not chars:
                matched = False
                break
            c = chars.popleft()
            consumed.append(c)
            if c != expected:
                matched = False
                break
        if matched:
            break
        taken.extend(consumed)
    return "".join(taken)