from typing import Any, Dict, Iterable, List, Optional


# Custom Exception Classes
class CrawlerError(Exception):
    """Base exception for all crawler errors"""

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}


class DiscoveryError(CrawlerError):
    """Sitemap unreachable or unparseable"""

    pass


class FetchError(CrawlerError):
    """Network failure, timeout or non-2xx response for a single page"""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, context)
        self.status_code = status_code


class ExtractionError(CrawlerError):
    """Malformed structured data or selector mismatch in one extraction layer"""

    pass


class LeaseConflict(CrawlerError):
    """Job already claimed by another worker, or its lease has not expired"""

    pass


class JobFatalError(CrawlerError):
    """Condition that leaves a job unable to make any progress"""

    pass


class ConfigurationError(CrawlerError):
    """Configuration-related errors"""

    pass


class JobNotFoundError(CrawlerError):
    """Requested crawl job does not exist"""

    def __init__(self, job_id: int):
        super().__init__(f"Job {job_id} not found", {"job_id": job_id})
        self.job_id = job_id


class InvalidTransitionError(CrawlerError):
    """Requested status change is not allowed from the job's current status"""

    def __init__(self, job_id: Optional[int], current: str, target: str, action: str = ""):
        verb = action or f"move to {target}"
        super().__init__(
            f"Cannot {verb} job with status {current}",
            {"job_id": job_id, "current": current, "target": target},
        )
        self.job_id = job_id
        self.current = current
        self.target = target


MAX_SUMMARY_LENGTH = 2000
MAX_SUMMARY_ERRORS = 5
MAX_ERROR_LENGTH = 100


def summarize_page_errors(
    errors: Iterable[Optional[str]], failed: int, total: int
) -> Optional[str]:
    """Build the aggregate failure message stored on a job.

    Returns None when pages were processed and none failed. Lists up to five
    distinct messages, each truncated to 100 characters, with the whole
    summary capped at 2000.
    """
    if total <= 0:
        return "No pages could be crawled."
    if failed <= 0:
        return None

    distinct: List[str] = []
    for error in errors:
        if not error or error in distinct:
            continue
        distinct.append(error)
        if len(distinct) >= MAX_SUMMARY_ERRORS:
            break

    shortened = [
        e if len(e) <= MAX_ERROR_LENGTH else e[: MAX_ERROR_LENGTH - 3] + "..."
        for e in distinct
    ]
    summary = f"Failed {failed} of {total} pages."
    if shortened:
        summary += " Errors: " + "; ".join(shortened)
    if len(summary) > MAX_SUMMARY_LENGTH:
        summary = summary[: MAX_SUMMARY_LENGTH - 3] + "..."
    return summary
