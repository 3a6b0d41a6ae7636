import pytest

from delivery_pipeline.compiler import SubstitutionCompiler, html_to_text, lookup, render
from delivery_pipeline.errors import CompilationFailed
from delivery_pipeline.models import Layout


class DummyLayouts:
    def __init__(self, layouts=(), default=None):
        self.layouts = {layout.id: layout for layout in layouts}
        self.default = default

    async def get_layout(self, environment_id, layout_id):
        return self.layouts.get(layout_id)

    async def get_default_layout(self, environment_id):
        return self.default


def test_lookup_nested_paths():
    data = {"user": {"name": "Ada", "tags": ["a", "b"]}}
    assert lookup(data, "user.name") == "Ada"
    assert lookup(data, "user.tags.1") == "b"
    assert lookup(data, "user.missing.deeper") is None


def test_render_escapes_double_braces_only():
    variables = {"value": "<b>bold</b>"}
    assert render("{{value}}", variables) == "&lt;b&gt;bold&lt;/b&gt;"
    assert render("{{{ value }}}", variables) == "<b>bold</b>"
    assert render("{{ value }}", variables, escape=False) == "<b>bold</b>"


def test_render_does_not_expand_substituted_text():
    assert render("{{a}}", {"a": "{{b}}", "b": "nope"}, escape=False) == "{{b}}"


def test_html_to_text():
    assert html_to_text("<p>Hello &amp; welcome</p><p>Bye</p>") == "Hello & welcome\n\nBye"


@pytest.mark.asyncio
async def test_compile_with_default_layout():
    layouts = DummyLayouts(default=Layout(id="l1", environment_id="e", identifier="d", content="<div>{{{body}}}</div>"))
    compiled = await SubstitutionCompiler(layouts).compile(
        "e",
        "o",
        None,
        {"subject": "Hi {{name}}", "content": "<p>{{name}}</p>", "senderName": "{{shop}}", "payload": {"name": "Ada", "shop": "Store"}},
    )
    assert compiled.subject == "Hi Ada"
    assert compiled.html_body == "<div><p>Ada</p></div>"
    assert compiled.plain_text == "Ada"
    assert compiled.sender_name == "Store"


@pytest.mark.asyncio
async def test_custom_html_skips_layout():
    layouts = DummyLayouts(default=Layout(id="l1", environment_id="e", identifier="d", content="<div>{{{body}}}</div>"))
    compiled = await SubstitutionCompiler(layouts).compile(
        "e", "o", None, {"content": "<html>raw</html>", "contentType": "customHtml", "payload": {}}
    )
    assert compiled.html_body == "<html>raw</html>"


@pytest.mark.asyncio
async def test_explicit_layout_id():
    layouts = DummyLayouts([Layout(id="l2", environment_id="e", identifier="x", content="[{{{body}}}|{{subject}}]")])
    compiled = await SubstitutionCompiler(layouts).compile(
        "e", "o", None, {"subject": "S", "content": "b", "layoutId": "l2", "payload": {}}
    )
    assert compiled.html_body == "[b|S]"


@pytest.mark.asyncio
async def test_unknown_layout_id_fails():
    with pytest.raises(CompilationFailed):
        await SubstitutionCompiler(DummyLayouts()).compile("e", "o", None, {"content": "b", "layoutId": "nope"})


@pytest.mark.asyncio
async def test_editor_blocks_are_joined():
    compiled = await SubstitutionCompiler().compile(
        "e", "o", None, {"content": [{"type": "text", "content": "one {{n}}"}, {"content": "two"}], "payload": {"n": 1}}
    )
    assert compiled.html_body == "<p>one 1</p>\n<p>two</p>"


@pytest.mark.asyncio
async def test_unsupported_content_is_compilation_failure():
    with pytest.raises(CompilationFailed):
        await SubstitutionCompiler().compile("e", "o", None, {"content": 42})


@pytest.mark.asyncio
async def test_compile_is_deterministic():
    compiler = SubstitutionCompiler()
    payload = {"subject": "{{a}}", "content": "<p>{{a}}</p>", "payload": {"a": "x"}}
    first = await compiler.compile("e", "o", None, payload)
    second = await compiler.compile("e", "o", None, payload)
    assert first == second
