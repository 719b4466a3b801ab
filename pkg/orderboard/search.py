"""
AI-ranked search over the board.

The board is flattened into one line per task, sent with the query to an
LLM relay, and the relay's free-text answer is scraped for task ids. The
relay is untrusted: ids are filtered against the board, capped, and any
failure (HTTP error, timeout, bad JSON) returns no results instead of an
error.
"""
import logging
import re
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from typing import Any, Callable, Dict, Iterable, List, Optional

import requests

from .errors import UpstreamError
from .schema import BoardData, Task

logger = logging.getLogger(__name__)

# Shared by every TaskSearch; abandoned relay calls finish here in the background
_search_pool = ThreadPoolExecutor(max_workers=4, thread_name_prefix="search")

SEARCH_PROMPT = """You are an AI search helper for a Kanban board.
Return ONLY the comma-separated task IDs (no spaces, no prose) of the TOP {limit} most relevant tasks to the user query.
If fewer than {limit} match, return what you have.

TASKS:
{tasks}

QUERY: {query}"""


def build_summary(tasks: Iterable[Task]) -> str:
    """One concise line per task so the prompt stays short."""
    return "\n".join(
        f"ID:{t.id} COL:{t.column_id} CUSTOMER:{t.customer_name} "
        f"REPRESENTATIVE:{t.representative} DATE:{t.order_date} NOTES:{t.notes}"
        for t in tasks
    )


def make_prompt(summary: str, query: str, limit: int = 3) -> str:
    return SEARCH_PROMPT.format(limit=limit, tasks=summary, query=query)


def parse_ids(text: str, limit: int = 3) -> List[str]:
    """Keep only digits and commas, split, drop empties, cap at limit."""
    cleaned = re.sub(r"[^\d,]", "", text or "")
    return [t for t in cleaned.split(",") if t][:limit]


def resolve(ids: Iterable[str], board: BoardData) -> List[Dict[str, Any]]:
    """Map ids to {task, columnTitle}, dropping ids the board does not know."""
    results = []
    seen = set()
    for tid in ids:
        task = board.tasks.get(tid)
        if task is None or tid in seen:
            continue
        seen.add(tid)
        results.append({"task": task.to_dict(), "columnTitle": board.column_title(task.column_id)})
    return results


class RelayRanker:
    """Calls the LLM relay: POST {"prompt": ...} -> {"text": "id,id,id"}."""

    def __init__(self, url: str, timeout: float = 10.0):
        self.url = url
        self.timeout = timeout

    def __call__(self, prompt: str) -> str:
        try:
            r = requests.post(
                self.url,
                json={"prompt": prompt},
                headers={"Content-Type": "application/json"},
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise UpstreamError(f"Relay unreachable: {e}") from e

        if not r.ok:
            raise UpstreamError(f"Relay error {r.status_code}: {r.text[:200]}")

        try:
            data = r.json()
        except ValueError as e:
            raise UpstreamError(f"Relay returned invalid JSON: {e}") from e

        text = data.get("text") if isinstance(data, dict) else None
        if not isinstance(text, str):
            raise UpstreamError("Relay response has no text field")
        return text


class TaskSearch:
    """Natural-language search with a hard deadline on the ranking call."""

    def __init__(
        self,
        ranker: Optional[Callable[[str], str]],
        timeout: float = 10.0,
        max_results: int = 3,
    ):
        self.ranker = ranker
        self.timeout = timeout
        self.max_results = max_results
        self._pool = _search_pool

    def rank(self, query: str, summary: str) -> List[str]:
        """
        Ask the ranker for the most relevant task ids.

        Raises UpstreamError on any ranker failure or when the deadline passes;
        the pending call is abandoned, not awaited.
        """
        if self.ranker is None:
            raise UpstreamError("No search relay configured")

        future = self._pool.submit(self.ranker, make_prompt(summary, query, self.max_results))
        try:
            text = future.result(timeout=self.timeout)
        except FutureTimeout as e:
            future.cancel()
            raise UpstreamError(f"Relay did not answer within {self.timeout}s") from e
        except UpstreamError:
            raise
        except Exception as e:
            raise UpstreamError(f"Ranker failed: {e}") from e
        return parse_ids(text, self.max_results)

    def search(self, query: str, board: BoardData) -> List[Dict[str, Any]]:
        """Up to max_results {task, columnTitle} entries; [] on empty query or any failure."""
        query = (query or "").strip()
        if not query or not board.tasks:
            return []
        try:
            ids = self.rank(query, build_summary(board.tasks.values()))
        except UpstreamError as e:
            logger.warning(f"AI search failed for {query!r}: {e}")
            return []
        return resolve(ids, board)
