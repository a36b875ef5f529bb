from .client import OrderFetcher, PageTextSource, PlaywrightPageSource, RenderedPage, SessionExpiredError
from .extract import extract_pending, extract_processed

__all__ = [
    "OrderFetcher",
    "PageTextSource",
    "PlaywrightPageSource",
    "RenderedPage",
    "SessionExpiredError",
    "extract_pending",
    "extract_processed",
]
