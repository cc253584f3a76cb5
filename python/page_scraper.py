import logging
import re
from typing import Any, Dict, Optional
from urllib.parse import urlparse

import requests
from bs4 import BeautifulSoup

logger = logging.getLogger(__name__)

MAX_SCRAPE = 5000
TRUNCATION_MARKER = "\n\n[...truncated]"
ARTICLE_SELECTORS = "article, main, .post-content, .article-body, .main-content"
NOISE_TAGS = ["script", "style", "noscript", "iframe", "svg", "template"]
BLANK_RUN_RE = re.compile(r"\s*\n\s*\n\s*")

HEADERS = {
    "User-Agent": (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/128.0.0.0 Safari/537.36"
    ),
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
}


class PageAccessError(Exception):
    """The page cannot be read, so no summary request should be sent."""


def truncate_content(text: str, limit: int = MAX_SCRAPE) -> str:
    if len(text) > limit:
        return text[:limit] + TRUNCATION_MARKER
    return text


def extract_main_content(html: str) -> str:
    soup = BeautifulSoup(html, "html.parser")
    for tag in soup(NOISE_TAGS):
        tag.decompose()

    element = soup.select_one(ARTICLE_SELECTORS) or soup.body or soup
    raw_text = element.get_text("\n")
    cleaned = BLANK_RUN_RE.sub("\n\n", raw_text).strip()
    return truncate_content(cleaned)


def handle_message(request: Dict[str, Any], html: str) -> Optional[Dict[str, str]]:
    """Answer a {"action": "summarizePage"} request for the given page."""
    if request.get("action") != "summarizePage":
        return None
    return {"content": extract_main_content(html)}


def fetch_page(url: str, timeout: float = 10) -> str:
    try:
        scheme = urlparse(url).scheme
    except ValueError as e:
        raise PageAccessError(
            "Could not determine the page URL. Make sure you are on a normal web page."
        ) from e
    if scheme not in ("http", "https"):
        raise PageAccessError(
            "Cannot summarize this page (internal or unsupported page). Try a regular website page."
        )

    try:
        response = requests.get(url, headers=HEADERS, timeout=timeout)
        response.raise_for_status()
    except requests.RequestException as e:
        logger.warning("Failed to fetch %s: %s", url, e)
        raise PageAccessError(f"Could not contact the page: {e}") from e
    return response.text
