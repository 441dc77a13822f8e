"""Template compiler and evaluation tests.

Covers literal round-trips, escaping, whitespace trimming, block structure,
include ordering, cache freshness and compile diagnostics.
"""

import asyncio
import os
import tempfile
import unittest
from pathlib import Path

from simplesite.errors import TemplateCompileError
from simplesite.template import TemplateContext, compile_template, escape_xml


class EscapeTests(unittest.TestCase):
    def test_escapes_all_markup_characters(self) -> None:
        self.assertEqual(escape_xml("&<>\"'"), "&amp;&lt;&gt;&#34;&#39;")

    def test_non_strings_are_converted_first(self) -> None:
        self.assertEqual(escape_xml(3), "3")


class CompileTests(unittest.TestCase):
    def test_line_map_points_at_source_lines(self) -> None:
        compiled = compile_template("a\nb\n<? x = 1 ?>\n", "t.html")
        self.assertEqual(compiled.line_map[1][0], 3)

    def test_syntax_error_reports_template_line(self) -> None:
        with self.assertRaises(TemplateCompileError) as cm:
            compile_template("line one\n<? x = ( ?>\n", "page.html")
        self.assertEqual(cm.exception.filename, "page.html")
        self.assertEqual(cm.exception.line, 2)
        self.assertTrue(str(cm.exception).startswith("page.html:2"))

    def test_syntax_error_is_a_syntax_error(self) -> None:
        with self.assertRaises(SyntaxError):
            compile_template("<? if ?>")

    def test_unclosed_block_is_rejected(self) -> None:
        with self.assertRaises(TemplateCompileError) as cm:
            compile_template("\n<? if True: ?>x")
        self.assertEqual(cm.exception.line, 2)

    def test_end_without_block_is_rejected(self) -> None:
        with self.assertRaises(TemplateCompileError):
            compile_template("x<? end ?>")

    def test_empty_expression_is_rejected(self) -> None:
        with self.assertRaises(TemplateCompileError):
            compile_template("<?= ?>")


class EvalTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.ctx = TemplateContext()

    async def render(self, source: str, **env) -> str:
        return await self.ctx.eval(source, env)

    async def test_text_without_code_round_trips(self) -> None:
        source = "plain 'quoted' \"text\" with \\ backslashes\n\tand tabs\n"
        self.assertEqual(await self.render(source), source)

    async def test_empty_template(self) -> None:
        self.assertEqual(await self.render(""), "")

    async def test_expression_output_is_escaped(self) -> None:
        self.assertEqual(await self.render("Hello <?= name ?>!", name="<b>"), "Hello &lt;b&gt;!")

    async def test_print_is_not_escaped(self) -> None:
        self.assertEqual(await self.render("<? print(v) ?>", v="<b>"), "<b>")

    async def test_escape_builtin(self) -> None:
        self.assertEqual(await self.render("<? print(escape(v)) ?>", v="&"), "&amp;")

    async def test_code_span_produces_no_output(self) -> None:
        self.assertEqual(await self.render("a \n<?- x = 1 ?>b"), "ab")

    async def test_code_span_without_hyphen_keeps_whitespace(self) -> None:
        self.assertEqual(await self.render("a \n<? 1 ?>b"), "a \nb")

    async def test_leading_trim(self) -> None:
        self.assertEqual(await self.render("a \n<?-= 1 ?>b"), "a1b")

    async def test_leading_trim_after_another_tag(self) -> None:
        self.assertEqual(await self.render("<?= 1 ?> \n<?-= 2 ?>"), "12")

    async def test_leading_trim_after_block_end(self) -> None:
        source = "<? for i in range(2): ?><?= i ?><? end ?>\n  <?- x = 1 ?>!"
        self.assertEqual(await self.render(source), "01!")

    async def test_trailing_trim(self) -> None:
        self.assertEqual(await self.render("a<?= 1 -?>\n  b"), "a1b")

    async def test_whitespace_kept_without_hyphen(self) -> None:
        self.assertEqual(await self.render("a <?= 1 ?> b"), "a 1 b")

    async def test_xml_declaration_is_literal(self) -> None:
        source = '<?xml version="1.0"?>\n<feed><?= n ?></feed>'
        self.assertEqual(await self.render(source, n=2), '<?xml version="1.0"?>\n<feed>2</feed>')

    async def test_for_block(self) -> None:
        self.assertEqual(await self.render("<? for i in range(3): ?><?= i ?>,<? end ?>"), "0,1,2,")

    async def test_if_else_block(self) -> None:
        source = "<? if flag: ?>yes<? else: ?>no<? end ?>"
        self.assertEqual(await self.render(source, flag=True), "yes")
        self.assertEqual(await self.render(source, flag=False), "no")

    async def test_nested_blocks(self) -> None:
        source = (
            "<? for row in rows: ?>"
            "<? for cell in row: ?>"
            "<? if cell: ?><?= cell ?><? end ?>"
            "<? end ?>;"
            "<? end ?>"
        )
        self.assertEqual(await self.render(source, rows=[[1, 0, 2], [3]]), "12;3;")

    async def test_trailing_comment_with_colon_opens_no_block(self) -> None:
        self.assertEqual(await self.render("<? x = 1  # note: ?>ok<?= x ?>"), "ok1")

    async def test_block_opener_with_trailing_comment(self) -> None:
        self.assertEqual(await self.render("<? if flag:  # shown ?>y<? end ?>", flag=True), "y")

    async def test_include_text_in_string_is_not_rewritten(self) -> None:
        self.assertEqual(await self.render("<? print(\"see include(x)\") ?>"), "see include(x)")

    async def test_include_attribute_call_is_not_rewritten(self) -> None:
        class Helper:
            def include(self, value):
                return value * 2

        self.assertEqual(await self.render("<? print(helper.include(2)) ?>", helper=Helper()), "4")

    async def test_multi_line_code_span(self) -> None:
        source = "<?\ndef double(x):\n    return x * 2\n?><?= double(21) ?>"
        self.assertEqual(await self.render(source), "42")

    async def test_caller_env_shadows_context_builtins(self) -> None:
        ctx = TemplateContext({"greeting": "hi"})
        self.assertEqual(await ctx.eval("<?= greeting ?>"), "hi")
        self.assertEqual(await ctx.eval("<?= greeting ?>", {"greeting": "yo"}), "yo")

    async def test_context_env_is_read_only(self) -> None:
        with self.assertRaises(TypeError):
            self.ctx.env["x"] = 1

    async def test_writer_receives_output(self) -> None:
        chunks: list[str] = []
        result = await self.ctx.eval("a<?= 1 ?>b", writer=chunks.append)
        self.assertIsNone(result)
        self.assertEqual("".join(chunks), "a1b")

    async def test_separately_compiled_templates_agree(self) -> None:
        source = "<? for c in word: ?>[<?= c ?>]<? end ?>"
        first = self.ctx.compile(source)
        second = self.ctx.compile(source)
        self.assertIsNot(first, second)
        self.assertEqual(await first.eval({"word": "ab"}), await second.eval({"word": "ab"}))

    async def test_runtime_errors_propagate(self) -> None:
        with self.assertRaises(NameError):
            await self.render("<?= missing ?>")

    async def test_evaluation_is_repeatable(self) -> None:
        template = self.ctx.compile("<? for i in range(n): ?>x<? end ?>")
        first = await template.eval({"n": 3})
        second = await template.eval({"n": 3})
        self.assertEqual(first, "xxx")
        self.assertEqual(first, second)

    async def test_concurrent_evaluations_do_not_mix(self) -> None:
        template = self.ctx.compile("<? await asyncio.sleep(0) ?><?= n ?>")
        results = await asyncio.gather(
            *(template.eval({"n": n, "asyncio": asyncio}) for n in range(20))
        )
        self.assertEqual(results, [str(n) for n in range(20)])


class FileTemplateTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.root = Path(self._tmp.name)
        self.ctx = TemplateContext()

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def write(self, name: str, text: str) -> Path:
        path = self.root / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(text, encoding="utf-8")
        return path

    async def test_include_output_is_in_order(self) -> None:
        main = self.write("main.html", "A<? include('x.html') ?>B")
        self.write("x.html", "X")
        self.assertEqual(await self.ctx.eval_file(main), "AXB")

    async def test_include_without_spaces(self) -> None:
        main = self.write("main.html", "A<?include(\"x.html\")?>B")
        self.write("x.html", "X")
        self.assertEqual(await self.ctx.eval_file(main), "AXB")

    async def test_include_is_relative_to_including_file(self) -> None:
        main = self.write("main.html", "<? include('parts/a.html') ?>")
        self.write("parts/a.html", "a<? include('b.html') ?>")
        self.write("parts/b.html", "b")
        self.assertEqual(await self.ctx.eval_file(main), "ab")

    async def test_include_env_merges_over_caller_env(self) -> None:
        main = self.write("main.html", "<?= x ?><? include('x.html', {'y': 2}) ?>")
        self.write("x.html", "<?= x ?><?= y ?>")
        self.assertEqual(await self.ctx.eval_file(main, {"x": 1}), "112")

    async def test_include_streams_into_writer(self) -> None:
        main = self.write("main.html", "A<? include('x.html') ?>B")
        self.write("x.html", "X")
        chunks: list[str] = []
        await self.ctx.eval_file(main, writer=chunks.append)
        self.assertEqual(chunks, ["A", "X", "B"])

    async def test_missing_include_raises(self) -> None:
        main = self.write("main.html", "<? include('nope.html') ?>")
        with self.assertRaises(FileNotFoundError):
            await self.ctx.eval_file(main)

    async def test_errors_in_included_template_propagate(self) -> None:
        main = self.write("main.html", "<? include('x.html') ?>")
        self.write("x.html", "<?= missing ?>")
        with self.assertRaises(NameError):
            await self.ctx.eval_file(main)

    async def test_cached_template_is_reused(self) -> None:
        path = self.write("t.html", "one")
        first = await self.ctx.get_file(path)
        second = await self.ctx.get_file(path)
        self.assertIs(first, second)
        self.assertIn(os.path.abspath(path), self.ctx.cache)

    async def test_modified_file_is_recompiled(self) -> None:
        path = self.write("t.html", "one")
        first = await self.ctx.get_file(path)
        path.write_text("two", encoding="utf-8")
        mtime = first.mtime + 1_000_000_000
        os.utime(path, ns=(mtime, mtime))
        second = await self.ctx.get_file(path)
        self.assertIsNot(first, second)
        self.assertEqual(await second.eval(), "two")

    async def test_nostat_skips_freshness_check(self) -> None:
        path = self.write("t.html", "one")
        first = await self.ctx.get_file(path)
        path.write_text("two", encoding="utf-8")
        mtime = first.mtime + 1_000_000_000
        os.utime(path, ns=(mtime, mtime))
        self.assertIs(await self.ctx.get_file(path, nostat=True), first)

    async def test_nostat_template_has_zero_mtime(self) -> None:
        path = self.write("t.html", "one")
        template = await self.ctx.get_file(path, nostat=True)
        self.assertEqual(template.mtime, 0)

    async def test_compile_error_names_file(self) -> None:
        path = self.write("bad.html", "ok\n<? x = ( ?>")
        with self.assertRaises(TemplateCompileError) as cm:
            await self.ctx.get_file(path)
        self.assertEqual(cm.exception.filename, os.path.abspath(path))
        self.assertEqual(cm.exception.line, 2)


if __name__ == "__main__":
    unittest.main()
