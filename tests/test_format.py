import pytest

from chatmate.format import escape_html, md_to_telegram_html


def test_bold():
    assert md_to_telegram_html("**bold**") == "<b>bold</b>"


def test_italic():
    assert md_to_telegram_html("*italic*") == "<i>italic</i>"


def test_code():
    assert md_to_telegram_html("`code`") == "<code>code</code>"


def test_code_block():
    assert md_to_telegram_html("```rust\nlet x = 1;\n```") == "<pre>let x = 1;\n</pre>"


def test_link():
    assert (
        md_to_telegram_html("[click](https://example.com)")
        == '<a href="https://example.com">click</a>'
    )


def test_header():
    assert md_to_telegram_html("## Title") == "<b>Title</b>\n"


def test_plain_html_escaped():
    assert md_to_telegram_html("<script>") == "&lt;script&gt;"


def test_strikethrough():
    assert md_to_telegram_html("~~gone~~") == "<s>gone</s>"


def test_blockquote():
    assert md_to_telegram_html("> quote") == "<blockquote>quote</blockquote>\n"


def test_unclosed_code_block_is_closed():
    assert md_to_telegram_html("```\nx < y") == "<pre>x &lt; y</pre>"


def test_bracket_without_url():
    assert md_to_telegram_html("[text] x") == "[text] x"


def test_bold_content_escaped():
    assert md_to_telegram_html("**a < b**") == "<b>a &lt; b</b>"


def test_ampersand_escaped():
    assert md_to_telegram_html("a & b") == "a &amp; b"


def test_greater_than_mid_line_is_text():
    assert md_to_telegram_html("a > b") == "a &gt; b"


@pytest.mark.parametrize(
    ("raw", "escaped"),
    [("<a&b>", "&lt;a&amp;b&gt;"), ("plain", "plain"), ("&amp;", "&amp;amp;")],
)
def test_escape_html(raw, escaped):
    assert escape_html(raw) == escaped