"""Playwright adapter exposing the small DOM surface the scrapers rely on.

Change notifications come from ``MutationObserver`` instances injected into
the page; each one reports through the ``__cptermMutation`` binding, which
is routed to the Python callback registered for that watch.
"""

import itertools
import logging
from typing import Awaitable, Callable

from playwright.async_api import ElementHandle, JSHandle, Page
from playwright.async_api import Error as PlaywrightError

from .errors import StructuralAssumptionError
from .observe import ChangeScope

logger = logging.getLogger(__name__)

MUTATION_BINDING = "__cptermMutation"
CAPTURE_BINDING = "__cptermCapture"

_WATCH_JS = """(el, [id, options]) => {
    const watches = window.__cptermWatches || (window.__cptermWatches = new Map());
    const observer = new MutationObserver(() => window.__cptermMutation(id));
    observer.observe(el, options);
    watches.set(id, observer);
}"""

_UNWATCH_JS = """(id) => {
    const watches = window.__cptermWatches;
    const observer = watches && watches.get(id);
    if (observer) {
        observer.disconnect();
        watches.delete(id);
    }
}"""

_AFFORDANCE_JS = """() => {
    if (window.__cptermAffordance || !document.body) return;
    window.__cptermAffordance = true;
    const button = document.createElement("button");
    button.style.position = "fixed";
    button.style.left = button.style.top = "0px";
    button.style.zIndex = "1000";
    button.innerText = "Open problem";
    button.addEventListener("click", () => window.__cptermCapture());
    const host = document.createElement("div");
    document.body.appendChild(host);
    host.attachShadow({ mode: "open" }).appendChild(button);
    document.addEventListener("keyup", (e) => {
        if (e.altKey && e.shiftKey && e.key === "C") window.__cptermCapture();
    });
}"""

_ALERT_JS = """(message) => {
    const banner = document.createElement("div");
    banner.setAttribute("role", "alert");
    banner.style.cssText = "position:fixed;top:0;left:0;right:0;z-index:2147483647;"
        + "padding:8px 32px 8px 12px;background:#b00020;color:#fff;font:14px sans-serif;white-space:pre-wrap";
    banner.textContent = message;
    const close = document.createElement("button");
    close.textContent = "\\u00d7";
    close.style.cssText = "position:absolute;top:4px;right:8px;background:none;border:none;color:#fff;font-size:18px";
    close.addEventListener("click", () => banner.remove());
    banner.appendChild(close);
    (document.body || document.documentElement).appendChild(banner);
}"""

_EDITOR_JS = "() => window.monaco?.editor?.getModels()?.[0] ?? null"


class _Watch:
    def __init__(self, dom: "PageDom", watch_id: int):
        self._dom = dom
        self._id = watch_id

    async def close(self) -> None:
        self._dom._watchers.pop(self._id, None)
        try:
            await self._dom.page.evaluate(_UNWATCH_JS, self._id)
        except PlaywrightError as exc:
            # page navigated or closed; its observers are gone with it
            logger.debug("Could not disconnect watch %d: %s", self._id, exc)


class EditorModel:
    """The page's first Monaco text model."""

    def __init__(self, handle: JSHandle):
        self._handle = handle

    async def get_value(self) -> str:
        try:
            return await self._handle.evaluate("m => m.getValue()")
        except PlaywrightError as exc:
            raise StructuralAssumptionError(f"Editor model is no longer attached: {exc}") from exc

    async def set_value(self, code: str) -> None:
        try:
            await self._handle.evaluate("(m, code) => m.setValue(code)", code)
        except PlaywrightError as exc:
            raise StructuralAssumptionError(f"Editor model is no longer attached: {exc}") from exc


class DomNode:
    def __init__(self, dom: "PageDom", handle: ElementHandle):
        self.dom = dom
        self.handle = handle

    def _wrap(self, handle) -> "DomNode | None":
        element = handle.as_element() if handle is not None else None
        if element is None:
            return None
        return DomNode(self.dom, element)

    async def query(self, selector: str) -> "DomNode | None":
        return self._wrap(await self.handle.query_selector(selector))

    async def query_all(self, selector: str) -> list["DomNode"]:
        return [DomNode(self.dom, h) for h in await self.handle.query_selector_all(selector)]

    async def text(self) -> str:
        return await self.handle.inner_text()

    async def outer_html(self) -> str:
        return await self.handle.evaluate("e => e.outerHTML")

    async def attr(self, name: str) -> str | None:
        return await self.handle.get_attribute(name)

    async def has_class(self, name: str) -> bool:
        return await self.handle.evaluate("(e, c) => e.classList.contains(c)", name)

    async def is_visible(self) -> bool:
        """Rendered and not inside a ``display: none`` ancestor."""
        return await self.handle.evaluate("e => e.offsetParent !== null")

    async def click(self) -> None:
        # DOM click; the page reacts the same as to a user click
        await self.handle.evaluate("e => e.click()")

    async def contains(self, other: "DomNode | None") -> bool:
        if other is None:
            return False
        return await self.handle.evaluate("(a, b) => a.contains(b)", other.handle)

    async def next_visible_sibling(self) -> "DomNode | None":
        handle = await self.handle.evaluate_handle(
            """e => {
                let s = e.nextElementSibling;
                while (s !== null && s.offsetParent === null) s = s.nextElementSibling;
                return s;
            }"""
        )
        return self._wrap(handle)

    async def parent(self) -> "DomNode | None":
        return self._wrap(await self.handle.evaluate_handle("e => e.parentElement"))

    async def closest(self, selector: str) -> "DomNode | None":
        """Nearest ancestor-or-self matching *selector*."""
        return self._wrap(await self.handle.evaluate_handle("(e, s) => e.closest(s)", selector))

    async def watch(self, scope: ChangeScope, callback: Callable[[], None]) -> _Watch:
        return await self.dom._watch(self.handle, scope, callback)


class PageDom:
    """One browser tab as seen by a scraper."""

    def __init__(self, page: Page):
        self.page = page
        self._watchers: dict[int, Callable[[], None]] = {}
        self._ids = itertools.count(1)
        self._capture_handler: Callable[[], Awaitable[None]] | None = None

    @property
    def url(self) -> str:
        return self.page.url

    async def install(self) -> None:
        """Register the bindings the injected scripts call back through.

        Bindings survive navigation, so this runs once per tab.
        """
        await self.page.expose_binding(MUTATION_BINDING, self._on_mutation)
        await self.page.expose_binding(CAPTURE_BINDING, self._on_capture)

    def bind_capture(self, handler: Callable[[], Awaitable[None]]) -> None:
        self._capture_handler = handler

    async def _on_mutation(self, source, watch_id: int) -> None:
        callback = self._watchers.get(watch_id)
        if callback is not None:
            callback()

    async def _on_capture(self, source) -> None:
        if self._capture_handler is not None:
            await self._capture_handler()

    async def install_capture_affordance(self) -> None:
        await self.page.evaluate(_AFFORDANCE_JS)

    async def show_alert(self, message: str) -> None:
        await self.page.evaluate(_ALERT_JS, message)

    async def body(self) -> DomNode:
        handle = await self.page.query_selector("body")
        if handle is None:
            raise StructuralAssumptionError("Page has no <body>")
        return DomNode(self, handle)

    async def query(self, selector: str) -> DomNode | None:
        handle = await self.page.query_selector(selector)
        return DomNode(self, handle) if handle is not None else None

    async def query_all(self, selector: str) -> list[DomNode]:
        return [DomNode(self, h) for h in await self.page.query_selector_all(selector)]

    async def find_editor(self) -> EditorModel | None:
        handle = await self.page.evaluate_handle(_EDITOR_JS)
        if await handle.evaluate("m => m === null"):
            await handle.dispose()
            return None
        return EditorModel(handle)

    async def _watch(self, handle: ElementHandle, scope: ChangeScope, callback) -> _Watch:
        watch_id = next(self._ids)
        self._watchers[watch_id] = callback
        try:
            await handle.evaluate(_WATCH_JS, [watch_id, scope.to_observer_options()])
        except PlaywrightError:
            self._watchers.pop(watch_id, None)
            raise
        return _Watch(self, watch_id)
