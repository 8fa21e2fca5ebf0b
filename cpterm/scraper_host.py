"""Per-tab controller tying a scraper to the relay.

The host owns the scraper for one page, turns user capture requests into
``newProblem`` messages, and answers ``setCode``/``run``/``submit`` from
the native host. Outbound messages go through the ``post`` coroutine the
session provides.
"""

import asyncio
import logging
from typing import Awaitable, Callable

from .config import AUTO_CAPTURE, OBSERVE_TIMEOUT
from .errors import ObservationTimeout
from .messages import Command, LogEntry, Message, SetCode, TestResults, is_command
from .msg_constants import CMD_KEEP_ALIVE, CMD_RUN, CMD_SUBMIT, LOG_ERROR
from .observe import SUBTREE, observe_until
from .sites import select_scraper

logger = logging.getLogger(__name__)

Post = Callable[[Message], Awaitable[None]]


def _background_task_done(task: asyncio.Task):
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error("Scraper host task failed: %s", exc, exc_info=exc)


class ScraperHost:
    def __init__(self, dom, post: Post, *, auto_capture: bool = AUTO_CAPTURE, timeout: float = OBSERVE_TIMEOUT):
        self.dom = dom
        self._post = post
        self.auto_capture = auto_capture
        self.timeout = timeout
        self.scraper = select_scraper(dom, timeout)
        self._site = type(self.scraper)
        # True while a capture observation is outstanding
        self.waiting = False
        self._capture_task: asyncio.Task | None = None
        self._tasks: set[asyncio.Task] = set()

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        task.add_done_callback(_background_task_done)
        return task

    async def start(self) -> None:
        """Offer the capture affordance and keep the native host alive."""
        if self.scraper is None:
            return
        await self.dom.install_capture_affordance()
        await self._post(Command(command=CMD_KEEP_ALIVE))

    # ------------------------------------------------------------------
    # Capture
    # ------------------------------------------------------------------

    async def capture(self) -> bool:
        """Send the page's problem once it is ready; True if one was sent.

        A request made while another capture is still waiting is ignored.
        Navigating away cancels a capture that is still waiting.
        """
        if self.scraper is None or self.waiting:
            return False
        task = asyncio.current_task()
        self.waiting, self._capture_task = True, task
        try:
            body = await self.dom.body()
            problem = await observe_until(body, self.scraper.problem_if_ready, SUBTREE, timeout=self.timeout)
        except ObservationTimeout:
            logger.info("Gave up waiting for a problem on %s", self.dom.url)
            return False
        finally:
            # a capture started after navigation owns the flag now
            if self._capture_task is task:
                self.waiting, self._capture_task = False, None
        logger.info("Captured problem '%s' (%s)", problem.name, problem.language)
        await self._post(problem)
        return True

    async def request_capture(self) -> None:
        """Start a capture without waiting for it; bound to the page affordance."""
        self._spawn(self.capture())

    # ------------------------------------------------------------------
    # Messages from the native host
    # ------------------------------------------------------------------

    async def handle_message(self, message: Message) -> None:
        if isinstance(message, SetCode):
            if self.scraper is None:
                logger.debug("setCode on an unsupported page ignored")
                return
            await self.scraper.set_code(message.code)
        elif is_command(message, CMD_RUN):
            self._spawn(self._report_results(CMD_RUN))
        elif is_command(message, CMD_SUBMIT):
            self._spawn(self._report_results(CMD_SUBMIT))
        elif isinstance(message, LogEntry):
            if message.message_type == LOG_ERROR:
                await self.dom.show_alert(message.message)
            else:
                logger.info("Native host: %s", message.message)
        else:
            logger.debug("Ignoring '%s' message", message.type)

    async def _report_results(self, command: str) -> None:
        try:
            if self.scraper is None:
                raise RuntimeError("This page is not a supported problem page")
            if command == CMD_SUBMIT:
                cases = await self.scraper.run_submit_tests()
            else:
                cases = await self.scraper.run_tests()
        except Exception as exc:
            logger.warning("Collecting %s results failed: %s", command, exc)
            results = TestResults(error=str(exc) or type(exc).__name__)
        else:
            results = TestResults(cases=cases)
        await self._post(results)

    # ------------------------------------------------------------------
    # Page lifecycle
    # ------------------------------------------------------------------

    def on_navigation(self) -> None:
        """The document changed; drop page-bound handles and abandon a waiting capture."""
        if self.scraper is not None:
            self.scraper.invalidate_editor()
        task, self._capture_task = self._capture_task, None
        self.waiting = False
        if task is not None and not task.done():
            logger.debug("Navigation cancelled a pending capture")
            task.cancel()

    async def on_load(self) -> None:
        """A new document finished loading."""
        self.on_navigation()
        scraper = select_scraper(self.dom, self.timeout)
        if type(scraper) is not self._site:
            self.scraper, self._site = scraper, type(scraper)
        await self.start()
        if self.auto_capture and self.scraper is not None:
            await self.request_capture()

    async def close(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
