from urllib.parse import urlparse

from .config import OBSERVE_TIMEOUT
from .hackerrank import HackerRankScraper
from .leetcode import LeetCodeScraper
from .scraper import Scraper

# hostname fragment -> scraper class
SITES = {
    "hackerrank.com": HackerRankScraper,
    "leetcode.com": LeetCodeScraper,
}


def select_scraper(dom, timeout: float = OBSERVE_TIMEOUT) -> Scraper | None:
    """Pick the scraper for the page's site, or None for unsupported sites."""
    hostname = urlparse(dom.url).hostname or ""
    for fragment, scraper_cls in SITES.items():
        if fragment in hostname:
            return scraper_cls(dom, timeout)
    return None
