import functools
import logging
import re

from .messages import TestCase
from .msg_constants import SINGLE_CASE_KEY
from .observe import SUBTREE, attribute_scope, observe_until, wait_until_true
from .scraper import Scraper, assert_dom_structure, optional_text, text_of

logger = logging.getLogger(__name__)

_SLUG_RE = re.compile(r"challenges/([^/]+)")

# Content panel switches tabs by relabelling itself, then re-renders its lines
_TAB_SCOPE = attribute_scope("aria-labelledby")


class HackerRankScraper(Scraper):
    STATEMENT = ".challenge-body-html"
    LANGUAGE = ".select-language"
    RUN_BUTTON = ".hr-monaco-compile"
    SUBMIT_BUTTON = ".hr-monaco-submit"
    RESULT = ".testcases-result-wrapper"
    COMPILE_ERROR = ".compile-error-wrapper"
    COMPILE_MESSAGE = "pre.compile-message"
    TAB = ".tab-item"
    TAB_CONTENT = ".tab-content"
    FAILED_MARKER = "svg[aria-label='Failed']"

    async def is_problem_page(self) -> bool:
        return self.path.endswith("problem")

    def get_problem_name(self) -> str:
        match = _SLUG_RE.search(self.path)
        return match.group(1) if match else ""

    async def get_problem_statement(self) -> str:
        node = await self.dom.query(self.STATEMENT)
        return await node.outer_html() if node is not None else ""

    async def get_editor_language(self) -> str:
        return await text_of(await self.dom.query(self.LANGUAGE))

    async def run_tests(self) -> dict[str, TestCase]:
        return await self._harvest(self.RUN_BUTTON)

    async def run_submit_tests(self) -> dict[str, TestCase]:
        return await self._harvest(self.SUBMIT_BUTTON)

    async def _current_result(self):
        """``(node, is_compile_error)`` for the result on screen, or None."""
        wrapper = await self.dom.query(self.RESULT)
        if wrapper is not None:
            return wrapper, False
        error = await self.dom.query(self.COMPILE_ERROR)
        if error is not None:
            message_box = await error.next_visible_sibling()
            if message_box is not None:
                return message_box, True
        return None

    async def _no_result(self) -> bool:
        return await self._current_result() is None

    async def _harvest(self, button_selector: str) -> dict[str, TestCase]:
        body = await self.dom.body()
        button = assert_dom_structure(await self.dom.query(button_selector), f"button {button_selector}")

        click = button.click
        if await self._current_result() is not None:
            logger.debug("Waiting for the previous result to clear")
            await wait_until_true(body, self._no_result, SUBTREE, on_start=click, timeout=self.timeout)
            click = None
        result, compile_error = await observe_until(
            body, self._current_result, SUBTREE, on_start=click, timeout=self.timeout
        )

        if compile_error:
            message = await text_of(await result.query(self.COMPILE_MESSAGE))
            return {SINGLE_CASE_KEY: TestCase(input="", error=message)}

        content = assert_dom_structure(await result.query(self.TAB_CONTENT), "test case panel")
        cases: dict[str, TestCase] = {}
        for tab in await result.query_all(self.TAB):
            tab_id = await tab.attr("id")
            await wait_until_true(
                content,
                functools.partial(self._tab_shown, content, tab_id),
                _TAB_SCOPE,
                on_start=tab.click,
                timeout=self.timeout,
            )
            label = (await tab.text()).strip()
            cases[label] = await self._read_case(content, tab)
        return cases

    @staticmethod
    async def _tab_shown(content, tab_id) -> bool:
        if await content.attr("aria-labelledby") != tab_id:
            return False
        return (
            await content.query(".unlock-wrapper") is not None
            or await content.query(".lines-container") is not None
        )

    async def _read_case(self, content, tab) -> TestCase:
        stdin = await text_of(await content.query(".stdin .lines-container"))
        stderr = await optional_text(await content.query(".stderr .lines-container"))
        if stderr:
            return TestCase(input=stdin, error=stderr)
        expected = await optional_text(await content.query(".expected-output .lines-container"))
        stdout = await optional_text(await content.query(".stdout .lines-container"))
        if stdout is None:
            # stdout is only rendered when it differs from the expected output
            failed = await tab.query(self.FAILED_MARKER) is not None
            stdout = "" if failed else expected
        return TestCase(input=stdin, output=stdout, expected=expected)
