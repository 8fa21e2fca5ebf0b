"""Common scraper interface and the helpers the site variants share."""

import abc
import logging
from urllib.parse import urlparse

from .config import OBSERVE_TIMEOUT
from .errors import StructuralAssumptionError
from .messages import NewProblem, TestCase

logger = logging.getLogger(__name__)


def assert_dom_structure(node, what: str):
    """Return *node*, or raise if the page lacks an element we depend on."""
    if node is None:
        raise StructuralAssumptionError(f"Unexpected DOM structure: missing {what}")
    return node


async def text_of(node) -> str:
    return await node.text() if node is not None else ""


async def optional_text(node) -> str | None:
    return await node.text() if node is not None else None


async def is_shown(node) -> bool:
    return node is not None and await node.is_visible()


class MonacoEditor:
    """Lazily resolved binding to the page's Monaco editor model.

    The binding is dropped on navigation; a stale binding is re-resolved
    once before giving up. A page without an editor reads as ``""`` and
    ignores writes.
    """

    def __init__(self, dom):
        self._dom = dom
        self._model = None

    def invalidate(self) -> None:
        self._model = None

    async def _resolve(self):
        if self._model is None:
            self._model = await self._dom.find_editor()
        return self._model

    async def get_value(self) -> str:
        for attempt in range(2):
            model = await self._resolve()
            if model is None:
                return ""
            try:
                return await model.get_value() or ""
            except StructuralAssumptionError:
                self.invalidate()
                if attempt:
                    raise
        return ""

    async def set_value(self, code: str) -> None:
        for attempt in range(2):
            model = await self._resolve()
            if model is None:
                logger.info("No editor on this page yet; ignoring setCode")
                return
            try:
                await model.set_value(code)
                return
            except StructuralAssumptionError:
                self.invalidate()
                if attempt:
                    raise


class Scraper(abc.ABC):
    """Reads a problem from a judge page, and drives its run/submit actions."""

    # A result styled with ERROR_CLASS is a compile/runtime error unless its
    # label is one of NON_ERROR_LABELS.
    ERROR_CLASS: str | None = None
    NON_ERROR_LABELS: tuple[str, ...] = ()

    def __init__(self, dom, timeout: float = OBSERVE_TIMEOUT):
        self.dom = dom
        self.timeout = timeout
        self.editor = MonacoEditor(dom)

    @property
    def path(self) -> str:
        return urlparse(self.dom.url).path

    def invalidate_editor(self) -> None:
        self.editor.invalidate()

    async def get_code(self) -> str:
        return await self.editor.get_value()

    async def set_code(self, code: str) -> None:
        await self.editor.set_value(code)

    @abc.abstractmethod
    async def is_problem_page(self) -> bool: ...

    @abc.abstractmethod
    def get_problem_name(self) -> str: ...

    @abc.abstractmethod
    async def get_problem_statement(self) -> str: ...

    @abc.abstractmethod
    async def get_editor_language(self) -> str: ...

    @abc.abstractmethod
    async def run_tests(self) -> dict[str, TestCase]: ...

    @abc.abstractmethod
    async def run_submit_tests(self) -> dict[str, TestCase]: ...

    async def classify_result(self, result) -> bool:
        """True if *result* reports a compile or runtime error."""
        if self.ERROR_CLASS is None or not await result.has_class(self.ERROR_CLASS):
            return False
        return (await result.text()).strip() not in self.NON_ERROR_LABELS

    async def problem_if_ready(self) -> NewProblem | None:
        """The current problem, or None until statement and code have loaded."""
        if not await self.is_problem_page():
            return None
        statement = await self.get_problem_statement()
        if not statement:
            return None
        code = await self.get_code()
        if not code:
            return None
        return NewProblem(
            problem=statement,
            code=code,
            language=await self.get_editor_language(),
            url=self.dom.url,
            name=self.get_problem_name(),
        )
