from .crawl_job_model import CrawlJob
from .page_model import Page
from .extraction_job_model import ExtractionJob
from .page_content_model import PageContent

__all__ = [
    "CrawlJob",
    "Page",
    "ExtractionJob",
    "PageContent",
]
