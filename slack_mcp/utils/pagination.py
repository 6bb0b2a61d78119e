"""
Cursor pagination helpers

Walks Slack's cursor-paginated endpoints with hard ceilings on pages and
items, so a misbehaving cursor can never turn into an unbounded fetch loop.
"""

import inspect
from collections import deque
from dataclasses import dataclass, field
from typing import (
    Any, AsyncIterator, Awaitable, Callable, Deque, Dict, Generic, List,
    Optional, Set, TypeVar, Union
)

from pydantic import BaseModel, ConfigDict, Field

from slack_mcp.utils.logging import get_logger

logger = get_logger(__name__)

P = TypeVar("P")
T = TypeVar("T")

PAGINATION_DEFAULTS: Dict[str, int] = {
    "MAX_PAGES": 10,
    "MAX_ITEMS": 1000,
    "MAX_PAGES_LIMIT": 100,
    "MAX_ITEMS_LIMIT": 10000,
}

SEEN_CURSOR_LIMIT = 1000


class PaginationInput(BaseModel):
    """Pagination controls accepted by list-style tools"""

    model_config = ConfigDict(extra="allow")

    fetch_all_pages: bool = False
    cursor: Optional[str] = None
    max_pages: Optional[int] = Field(default=None, ge=1, le=PAGINATION_DEFAULTS["MAX_PAGES_LIMIT"])
    max_items: Optional[int] = Field(default=None, ge=1, le=PAGINATION_DEFAULTS["MAX_ITEMS_LIMIT"])


def apply_pagination_safety_defaults(
    pagination: PaginationInput,
    default_max_pages: int = PAGINATION_DEFAULTS["MAX_PAGES"],
    default_max_items: int = PAGINATION_DEFAULTS["MAX_ITEMS"],
) -> PaginationInput:
    """
    Fill in page/item ceilings when every page was requested

    Single-page requests pass through untouched. Explicit values are clamped
    to the hard limits.
    """
    if not pagination.fetch_all_pages:
        return pagination

    max_pages = pagination.max_pages or default_max_pages
    max_items = pagination.max_items or default_max_items

    return pagination.model_copy(update={
        "max_pages": min(max_pages, PAGINATION_DEFAULTS["MAX_PAGES_LIMIT"]),
        "max_items": min(max_items, PAGINATION_DEFAULTS["MAX_ITEMS_LIMIT"]),
    })


class CursorCycleError(RuntimeError):
    """Raised when a cursor repeats while cycle detection is enabled"""


async def paginate(
    fetch_page: Callable[[Optional[str]], Awaitable[P]],
    get_cursor: Callable[[P], Optional[str]],
    max_pages: Optional[int] = None,
    max_items: Optional[int] = None,
    get_items: Optional[Callable[[P], List[Any]]] = None,
    initial_cursor: Optional[str] = None,
    detect_cursor_cycles: bool = False,
) -> AsyncIterator[P]:
    """
    Yield raw pages one at a time until the cursor runs out or a limit is hit

    The first page is always fetched, so an empty first page still yields once.
    Pages are strictly sequential because each fetch needs the previous cursor.

    Args:
        fetch_page: Async function taking the cursor (None for the first page)
        get_cursor: Extracts the next cursor from a page; falsy means done
        max_pages: Stop after this many pages
        max_items: Stop once this many items were seen (needs get_items)
        get_items: Extracts the items of a page
        initial_cursor: Resume from a previously returned cursor
        detect_cursor_cycles: Raise CursorCycleError if a cursor comes back
    """
    cursor = initial_cursor
    page_count = 0
    item_count = 0
    seen: Set[str] = set()
    seen_order: Deque[str] = deque()

    while True:
        page = await fetch_page(cursor)
        page_count += 1
        if get_items is not None:
            item_count += len(get_items(page) or [])

        yield page

        cursor = get_cursor(page) or None

        if max_pages is not None and page_count >= max_pages:
            logger.debug("Pagination stopped at max_pages=%d", max_pages)
            break
        if max_items is not None and get_items is not None and item_count >= max_items:
            logger.debug("Pagination stopped at max_items=%d", max_items)
            break
        if not cursor:
            break

        if detect_cursor_cycles:
            if cursor in seen:
                raise CursorCycleError(f"Cursor {cursor!r} was returned twice")
            seen.add(cursor)
            seen_order.append(cursor)
            if len(seen_order) > SEEN_CURSOR_LIMIT:
                seen.discard(seen_order.popleft())


@dataclass
class PageCollection(Generic[T]):
    """Flattened items from a pagination run"""

    items: List[T] = field(default_factory=list)
    page_count: int = 0


async def collect_all_pages(
    pages: AsyncIterator[P],
    get_items: Callable[[P], List[T]],
    max_items: Optional[int] = None,
) -> PageCollection[T]:
    """Drain a page iterator into one list, trimmed to exactly max_items"""
    collection: PageCollection[T] = PageCollection()

    async for page in pages:
        collection.items.extend(get_items(page) or [])
        collection.page_count += 1

    if max_items is not None and len(collection.items) > max_items:
        collection.items = collection.items[:max_items]

    return collection


@dataclass
class PaginatedData(Generic[T]):
    """What a formatter receives from execute_pagination"""

    items: List[T]
    page_count: int
    has_more: bool
    cursor: Optional[str] = None
    raw_page: Any = None


@dataclass
class PaginationConfig(Generic[P, T]):
    """Callbacks binding the pagination engine to one endpoint"""

    fetch_page: Callable[[Optional[str]], Awaitable[P]]
    get_cursor: Callable[[P], Optional[str]]
    get_items: Callable[[P], List[T]]
    format_response: Callable[[PaginatedData[T]], Union[Any, Awaitable[Any]]]
    default_max_pages: int = PAGINATION_DEFAULTS["MAX_PAGES"]
    default_max_items: int = PAGINATION_DEFAULTS["MAX_ITEMS"]
    detect_cursor_cycles: bool = False


async def execute_pagination(
    pagination: Union[PaginationInput, Dict[str, Any], None],
    config: PaginationConfig[P, T],
) -> Any:
    """
    Fetch either every page (bounded) or a single page, then format

    With fetch_all_pages the result reports has_more=False and no cursor.
    A single page reports has_more from the presence of the next cursor.
    format_response may be sync or async.
    """
    if pagination is None:
        pagination = PaginationInput()
    elif isinstance(pagination, dict):
        pagination = PaginationInput(**pagination)

    if pagination.fetch_all_pages:
        bounded = apply_pagination_safety_defaults(
            pagination, config.default_max_pages, config.default_max_items
        )
        pages = paginate(
            config.fetch_page,
            config.get_cursor,
            max_pages=bounded.max_pages,
            max_items=bounded.max_items,
            get_items=config.get_items,
            initial_cursor=bounded.cursor,
            detect_cursor_cycles=config.detect_cursor_cycles,
        )
        collected = await collect_all_pages(pages, config.get_items, bounded.max_items)
        data: PaginatedData[T] = PaginatedData(
            items=collected.items,
            page_count=collected.page_count,
            has_more=False,
            cursor=None,
        )
    else:
        page = await config.fetch_page(pagination.cursor)
        next_cursor = config.get_cursor(page) or None
        data = PaginatedData(
            items=list(config.get_items(page) or []),
            page_count=1,
            has_more=bool(next_cursor),
            cursor=next_cursor,
            raw_page=page,
        )

    formatted = config.format_response(data)
    if inspect.isawaitable(formatted):
        formatted = await formatted
    return formatted
