"""In-memory page implementing the PageDom/DomNode surface on BeautifulSoup.

Tests build a page from HTML, register click reactions, and schedule
mutations; every mutation notifies the active watches the way injected
MutationObservers do in a real browser.
"""

import asyncio
import re

import soupsieve as sv
from bs4 import BeautifulSoup, Tag

from cpterm.errors import StructuralAssumptionError

_DISPLAY_NONE = re.compile(r"display\s*:\s*none")


def _fragment(markup: str) -> list:
    return list(BeautifulSoup(markup, "html.parser").contents)


class FakeWatch:
    def __init__(self, page, scope, callback):
        self.page = page
        self.scope = scope
        self.callback = callback

    async def close(self):
        if self in self.page.watches:
            self.page.watches.remove(self)


class FakeEditorModel:
    def __init__(self, page):
        self.page = page
        self.stale = False

    async def get_value(self):
        if self.stale:
            raise StructuralAssumptionError("Editor model is no longer attached")
        return self.page.editor_value

    async def set_value(self, code):
        if self.stale:
            raise StructuralAssumptionError("Editor model is no longer attached")
        self.page.editor_value = code
        self.page.notify()


class FakeNode:
    def __init__(self, page, tag: Tag):
        self.page = page
        self.tag = tag

    def __repr__(self):
        return f"<FakeNode {self.tag.name} {dict(self.tag.attrs)}>"

    def _wrap(self, tag):
        return FakeNode(self.page, tag) if tag is not None else None

    async def query(self, selector):
        return self._wrap(self.tag.select_one(selector))

    async def query_all(self, selector):
        return [FakeNode(self.page, t) for t in self.tag.select(selector)]

    async def text(self):
        return self.tag.get_text()

    async def outer_html(self):
        return str(self.tag)

    async def attr(self, name):
        value = self.tag.get(name)
        if isinstance(value, list):
            return " ".join(value)
        return value

    async def has_class(self, name):
        return name in (self.tag.get("class") or [])

    async def is_visible(self):
        return self.page.is_rendered(self.tag)

    async def click(self):
        self.page.click(self.tag)

    async def contains(self, other):
        if other is None:
            return False
        return other.tag is self.tag or any(p is self.tag for p in other.tag.parents)

    async def next_visible_sibling(self):
        for sibling in self.tag.next_siblings:
            if isinstance(sibling, Tag) and self.page.is_rendered(sibling):
                return FakeNode(self.page, sibling)
        return None

    async def parent(self):
        parent = self.tag.parent
        if parent is None or isinstance(parent, BeautifulSoup):
            return None
        return FakeNode(self.page, parent)

    async def closest(self, selector):
        tag = self.tag
        while tag is not None and not isinstance(tag, BeautifulSoup):
            if sv.match(selector, tag):
                return FakeNode(self.page, tag)
            tag = tag.parent
        return None

    async def watch(self, scope, callback):
        return self.page.watch(scope, callback)


class FakePage:
    def __init__(self, url: str, html: str, editor: str | None = None):
        self.url = url
        self.soup = BeautifulSoup(html, "html.parser")
        self.editor_value = editor
        self.editor_models: list[FakeEditorModel] = []
        self.watches: list[FakeWatch] = []
        self.watch_count = 0
        self.alerts: list[str] = []
        self.affordance_installs = 0
        self.clicks: list[Tag] = []
        self._reactions: list[tuple[str, object]] = []
        self._capture_handler = None

    # -- PageDom surface ----------------------------------------------------

    async def install(self):
        pass

    def bind_capture(self, handler):
        self._capture_handler = handler

    async def install_capture_affordance(self):
        self.affordance_installs += 1

    async def show_alert(self, message):
        self.alerts.append(message)

    async def body(self):
        return FakeNode(self, self.soup.body or self.soup)

    async def query(self, selector):
        tag = self.soup.select_one(selector)
        return FakeNode(self, tag) if tag is not None else None

    async def query_all(self, selector):
        return [FakeNode(self, t) for t in self.soup.select(selector)]

    async def find_editor(self):
        if self.editor_value is None:
            return None
        model = FakeEditorModel(self)
        self.editor_models.append(model)
        return model

    # -- test controls ------------------------------------------------------

    def watch(self, scope, callback):
        watch = FakeWatch(self, scope, callback)
        self.watches.append(watch)
        self.watch_count += 1
        return watch

    def notify(self):
        for watch in list(self.watches):
            watch.callback()

    def mutate(self, fn):
        fn(self)
        self.notify()

    def later(self, delay, fn):
        asyncio.get_running_loop().call_later(delay, self.mutate, fn)

    def on_click(self, selector, reaction):
        """Run ``reaction(page)`` whenever an element matching *selector* is clicked."""
        self._reactions.append((selector, reaction))

    def click(self, tag):
        self.clicks.append(tag)
        for selector, reaction in self._reactions:
            if sv.match(selector, tag):
                self.mutate(reaction)

    async def press_capture(self):
        await self._capture_handler()

    def is_rendered(self, tag):
        node = tag
        while node is not None and not isinstance(node, BeautifulSoup):
            if node.has_attr("hidden") or _DISPLAY_NONE.search(node.get("style", "")):
                return False
            node = node.parent
        return node is self.soup

    # -- mutation helpers ---------------------------------------------------

    def select(self, selector) -> Tag:
        tag = self.soup.select_one(selector)
        assert tag is not None, selector
        return tag

    def set_html(self, selector, markup):
        tag = self.select(selector)
        tag.clear()
        for child in _fragment(markup):
            tag.append(child.extract())

    def append_html(self, selector, markup):
        tag = self.select(selector)
        for child in _fragment(markup):
            tag.append(child.extract())

    def set_text(self, selector, text):
        self.select(selector).string = text

    def remove(self, selector):
        for tag in self.soup.select(selector):
            tag.extract()

    def set_attr(self, selector, name, value):
        self.select(selector)[name] = value

    def detach_editor(self):
        for model in self.editor_models:
            model.stale = True

    def navigate(self, url, html):
        """Replace the document; observers on the old one are gone."""
        self.url = url
        self.soup = BeautifulSoup(html, "html.parser")
        self.watches.clear()
        self.detach_editor()
