import logging
import re

from .messages import TestCase
from .msg_constants import SINGLE_CASE_KEY
from .observe import SUBTREE, attribute_scope, observe_until, wait_until_true
from .scraper import Scraper, assert_dom_structure, is_shown, text_of

logger = logging.getLogger(__name__)

_PROBLEM_PATH_RE = re.compile(r"/problems/.+/")
_SLUG_RE = re.compile(r"problems/([^/]+)")
# The submission-detail tab button lives at ".../tbN"; its pane at ".../tN"
_TAB_BUTTON_SUFFIX_RE = re.compile(r"tb(?=[0-9]+$)")

_RESULT_SCOPE = attribute_scope("data-e2e-locator")


class LeetCodeScraper(Scraper):
    ERROR_CLASS = "text-red-s"
    NON_ERROR_LABELS = ("Wrong Answer",)

    DESCRIPTION = "div[data-track-load='description_content']"
    LANGUAGE = "#editor button:has(div svg[data-icon*='down'])"
    RESULTS_PANEL = "div[data-layout-path='/c1/ts1/t1']"
    RUN_BUTTON = "button[data-e2e-locator='console-run-button']"
    SUBMIT_BUTTON = "button[data-e2e-locator='console-submit-button']"
    CONSOLE_RESULT = "[data-e2e-locator='console-result']"
    RUN_LABELS = "div.text-label-3"
    SUBMIT_LABELS = "div.text-label-3, div.text-text-tertiary"
    ERROR_BOX = ".whitespace-pre-wrap"
    CASE_TAB = "div.cursor-pointer"
    SELECTED_TAB_CLASS = "bg-fill-3"
    SUBMISSION_TAB = "#submission-detail_tab"
    CONTENT = "#qd-content"
    ACCEPTED_MARKER = "span[data-e2e-locator='submission-result']"
    ACCEPTED_CLASS = "text-green-s"

    async def is_problem_page(self) -> bool:
        if _PROBLEM_PATH_RE.search(self.path) is None:
            return False
        return await is_shown(await self.dom.query(self.DESCRIPTION))

    def get_problem_name(self) -> str:
        match = _SLUG_RE.search(self.path)
        return match.group(1) if match else ""

    async def get_problem_statement(self) -> str:
        node = await self.dom.query(self.DESCRIPTION)
        return await node.outer_html() if node is not None else ""

    async def get_editor_language(self) -> str:
        return await text_of(await self.dom.query(self.LANGUAGE))

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    async def run_tests(self) -> dict[str, TestCase]:
        results = assert_dom_structure(await self.dom.query(self.RESULTS_PANEL), "test result panel")
        button = assert_dom_structure(await self.dom.query(self.RUN_BUTTON), "run button")

        async def visible_result():
            node = await results.query(self.CONSOLE_RESULT)
            return node if await is_shown(node) else None

        async def no_visible_result():
            return await visible_result() is None

        click = button.click
        if await visible_result() is not None:
            logger.debug("Waiting for the previous console result to clear")
            await wait_until_true(results, no_visible_result, _RESULT_SCOPE, on_start=click, timeout=self.timeout)
            click = None
        console_result = await observe_until(
            results, visible_result, _RESULT_SCOPE, on_start=click, timeout=self.timeout
        )

        fields = await self._field_nodes(results, self.RUN_LABELS)
        if await self.classify_result(console_result):
            return {SINGLE_CASE_KEY: await self._error_case(results, fields.get("input"), console_result)}

        input_node, output_node, expected_node = (fields.get(k) for k in ("input", "output", "expected"))
        cases: dict[str, TestCase] = {}
        if input_node is None or output_node is None or expected_node is None:
            return cases
        for tab in await results.query_all(self.CASE_TAB):
            label = (await tab.text()).strip()
            if not label:
                continue
            if not await tab.has_class(self.SELECTED_TAB_CLASS):
                previous = await input_node.text()

                async def input_changed():
                    return await input_node.text() != previous

                await wait_until_true(results, input_changed, SUBTREE, on_start=tab.click, timeout=self.timeout)
            cases[label] = TestCase(
                input=await input_node.text(),
                output=await output_node.text(),
                expected=await expected_node.text(),
            )
        return cases

    # ------------------------------------------------------------------
    # Submit
    # ------------------------------------------------------------------

    async def run_submit_tests(self) -> dict[str, TestCase]:
        await self._close_submission_detail()

        container = assert_dom_structure(await self.dom.query(self.CONTENT), "problem content")
        button = assert_dom_structure(await self.dom.query(self.SUBMIT_BUTTON), "submit button")

        async def visible_detail_tab():
            node = await self.dom.query(self.SUBMISSION_TAB)
            return node if await is_shown(node) else None

        detail_tab = await observe_until(
            container, visible_detail_tab, SUBTREE, on_start=button.click, timeout=self.timeout
        )
        # re-read the pane path; the layout may have moved since the last submission
        pane = assert_dom_structure(await detail_tab.closest("[data-layout-path]"), "submission detail pane")
        results_path = _TAB_BUTTON_SUFFIX_RE.sub("t", await pane.attr("data-layout-path"))
        results = await observe_until(
            container,
            lambda: container.query(f"div[data-layout-path='{results_path}']"),
            SUBTREE,
            timeout=self.timeout,
        )

        fields: dict = {}
        console_result = None

        async def settled() -> bool:
            nonlocal fields, console_result
            fields = await self._field_nodes(results, self.SUBMIT_LABELS, last_input_on_parent=True)
            if all(fields.get(k) is not None for k in ("input", "output", "expected")):
                return True
            accepted = await results.query(self.ACCEPTED_MARKER)
            if accepted is not None:
                marker_parent = await accepted.parent()
                if marker_parent is not None and await marker_parent.has_class(self.ACCEPTED_CLASS):
                    return True
            console_result = await results.query("span" + self.CONSOLE_RESULT)
            return console_result is not None

        await wait_until_true(results, settled, SUBTREE, timeout=self.timeout)

        if all(fields.get(k) is not None for k in ("input", "output", "expected")):
            return {
                SINGLE_CASE_KEY: TestCase(
                    input=await fields["input"].text(),
                    output=await fields["output"].text(),
                    expected=await fields["expected"].text(),
                )
            }
        if console_result is not None and await self.classify_result(console_result):
            return {SINGLE_CASE_KEY: await self._error_case(results, fields.get("input"), console_result)}
        return {}

    async def _close_submission_detail(self) -> None:
        """Close a submission-detail pane left over from an earlier submit."""
        detail_tab = await self.dom.query(self.SUBMISSION_TAB)
        if detail_tab is None:
            return
        pane = assert_dom_structure(await detail_tab.closest("[data-layout-path]"), "submission detail pane")
        pane_path = await pane.attr("data-layout-path")
        close_button = await self.dom.query(f"div[data-layout-path='{pane_path}/button/close']")

        async def pane_hidden():
            return not await pane.is_visible()

        await wait_until_true(
            await self.dom.body(),
            pane_hidden,
            SUBTREE,
            on_start=close_button.click if close_button is not None else None,
            timeout=self.timeout,
        )

    # ------------------------------------------------------------------
    # Shared
    # ------------------------------------------------------------------

    async def _field_nodes(self, root, label_selector: str, last_input_on_parent: bool = False) -> dict:
        """Map input/output/expected to the value node following each label."""
        fields = {}
        for label in await root.query_all(label_selector):
            text = (await label.text()).strip()
            anchor = label
            if text == "Input":
                key = "input"
            elif text.startswith("Last Executed Input"):
                key = "input"
                if last_input_on_parent:
                    anchor = await label.parent()
                    if anchor is None:
                        continue
            elif text == "Output":
                key = "output"
            elif text == "Expected":
                key = "expected"
            else:
                continue
            fields[key] = await anchor.next_visible_sibling()
        return fields

    async def _error_case(self, root, input_node, console_result) -> TestCase:
        error_box = await root.query(self.ERROR_BOX)
        if input_node is not None and await input_node.contains(error_box):
            # the box under "Input" is the input itself; the label carries the error
            error = await console_result.text()
        else:
            error = await text_of(error_box)
        return TestCase(input=await text_of(input_node), error=error)
