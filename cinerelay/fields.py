# fields.py
"""
Field extraction for a single listing item.

Every field is described by an ordered chain of small functions that take the
item element and return a value or None. The first non-empty value wins, so
the most specific selectors go first.
"""
import re
from typing import Callable, List, Optional, Sequence

from bs4 import Tag

BACKGROUND_URL_RE = re.compile(r"url\(\s*['\"]?(.*?)['\"]?\s*\)")

Extractor = Callable[[Tag], Optional[str]]


# Helper function to make a URL absolute against an origin
def make_absolute(url: Optional[str], origin: str) -> Optional[str]:
    """
    Resolve a listing URL against the catalog origin.
    Examples:
        https://a.b/x -> https://a.b/x
        //cdn.b/x.jpg -> https://cdn.b/x.jpg
        /movie/x/     -> {origin}/movie/x/
        movie/x/      -> {origin}/movie/x/
    """
    if not url:
        return None
    url = url.strip()
    if not url:
        return None
    if url.startswith(('http://', 'https://')):
        return url
    if url.startswith('//'):
        return 'https:' + url
    origin = origin.rstrip('/')
    if url.startswith('/'):
        return origin + url
    return origin + '/' + url


def first_match(item: Tag, chain: Sequence[Extractor]) -> Optional[str]:
    for extractor in chain:
        value = extractor(item)
        if value:
            return value
    return None


def _text_of(selector: str) -> Extractor:
    def extract(item: Tag) -> Optional[str]:
        node = item.select_one(selector)
        if node is None:
            return None
        return node.get_text(strip=True) or None
    return extract


def _attribute_of(selector: str, attribute: str) -> Extractor:
    def extract(item: Tag) -> Optional[str]:
        node = item.select_one(selector)
        if node is None:
            return None
        value = node.get(attribute)
        return value.strip() if isinstance(value, str) and value.strip() else None
    return extract


def _background_image(item: Tag) -> Optional[str]:
    candidates = [item] if 'background-image' in (item.get('style') or '') else []
    candidates.extend(item.select("[style*='background-image']"))
    for node in candidates:
        match = BACKGROUND_URL_RE.search(node.get('style') or '')
        if match and match.group(1):
            return match.group(1)
    return None


def _own_href(item: Tag) -> Optional[str]:
    href = item.get('href')
    return href.strip() if isinstance(href, str) and href.strip() else None


TITLE_CHAIN: List[Extractor] = [
    _text_of('h2'),
    _text_of('h3'),
    _text_of('.title'),
    _text_of('.movie-title'),
    _text_of("[class*='title']"),
    _text_of('a'),
    _attribute_of('a', 'title'),
    _attribute_of('a', 'oldtitle'),
    _attribute_of('img', 'alt'),
]

IMAGE_CHAIN: List[Extractor] = [
    _attribute_of('img', 'src'),
    _attribute_of('img', 'data-src'),
    _attribute_of('img', 'data-lazy-src'),
    _attribute_of('img', 'data-original'),
    _background_image,
]

LINK_CHAIN: List[Extractor] = [
    _attribute_of('a', 'href'),
    _own_href,
]

RATING_CHAIN: List[Extractor] = [
    _text_of('.rating'),
    _text_of('.imdb'),
    _text_of("[class*='rating']"),
    _text_of("[class*='score']"),
]

RUNTIME_CHAIN: List[Extractor] = [
    _text_of('.duration'),
    _text_of('.time'),
    _text_of("[class*='duration']"),
    _text_of("[class*='time']"),
]

GENRE_SELECTOR = ".genre, .genres, [class*='genre'] a, [class*='category']"


def parse_title(item: Tag) -> Optional[str]:
    title = first_match(item, TITLE_CHAIN)
    return re.sub(r'\s+', ' ', title).strip() if title else None


def parse_image(item: Tag, origin: str) -> Optional[str]:
    return make_absolute(first_match(item, IMAGE_CHAIN), origin)


def parse_link(item: Tag, origin: str) -> Optional[str]:
    href = first_match(item, LINK_CHAIN)
    # Fragment-only links are placeholders, keep them as-is so validation drops them
    if href and href.startswith('#'):
        return href
    return make_absolute(href, origin)


def parse_rating(item: Tag) -> Optional[str]:
    return first_match(item, RATING_CHAIN)


def parse_runtime(item: Tag) -> Optional[str]:
    return first_match(item, RUNTIME_CHAIN)


def parse_genres(item: Tag) -> List[str]:
    # select() returns document order, duplicates are kept on purpose
    return [node.get_text(strip=True) for node in item.select(GENRE_SELECTOR) if node.get_text(strip=True)]


def parse_item(item: Tag, origin: str) -> dict:
    """Return the raw field values of one listing item; missing fields are None."""
    return {
        'title': parse_title(item),
        'image_url': parse_image(item, origin),
        'detail_url': parse_link(item, origin),
        'rating': parse_rating(item),
        'runtime': parse_runtime(item),
        'genres': parse_genres(item),
    }
