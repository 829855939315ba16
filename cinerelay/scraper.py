# scraper.py
"""
Catalog extraction for the upstream movie site.

This module turns a rendered listing page into deduplicated CatalogEntry
objects:
- Items are located with a fallback chain of selectors
- Fields are pulled by cinerelay.fields
- Entries sharing title and year are merged into one entry with several
  audio tracks (Hindi / English releases of the same movie)
- Pagination depth is detected from page links

It also fetches listing pages through the catalog upstream and maps failures
to HTTP errors the same way for every route.
"""
import logging
import re
from typing import Dict, List, Optional, Tuple
from urllib.parse import quote

from bs4 import BeautifulSoup, Tag
from fastapi import HTTPException
from httpx import HTTPStatusError, RequestError

from .config import Settings
from .fields import parse_item
from .models import AudioTrack, CatalogEntry, CatalogPage
from .upstream import UpstreamResolver

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# Movie categories from the website (matching the actual URL slugs)
MOVIE_CATEGORIES = [
    {"id": "all", "name": "All Movies", "slug": ""},
    {"id": "drama", "name": "Drama", "slug": "drama"},
    {"id": "action", "name": "Action", "slug": "action"},
    {"id": "comedy", "name": "Comedy", "slug": "comedy"},
    {"id": "romance", "name": "Romance", "slug": "romance"},
    {"id": "thriller", "name": "Thriller", "slug": "thriller"},
    {"id": "crime", "name": "Crime", "slug": "crime"},
    {"id": "horror", "name": "Horror", "slug": "horror"},
    {"id": "adventure", "name": "Adventure", "slug": "adventure"},
    {"id": "science-fiction", "name": "Science Fiction", "slug": "science-fiction"},
    {"id": "mystery", "name": "Mystery", "slug": "mystery"},
    {"id": "fantasy", "name": "Fantasy", "slug": "fantasy"},
    {"id": "family", "name": "Family", "slug": "family"},
    {"id": "tv-show", "name": "TV Show", "slug": "tv-show"},
    {"id": "action-adventure", "name": "Action & Adventure", "slug": "action-adventure"},
    {"id": "history", "name": "History", "slug": "history"},
    {"id": "war", "name": "War", "slug": "war"},
    {"id": "music", "name": "Music", "slug": "music"},
    {"id": "biography", "name": "Biography", "slug": "biography"},
    {"id": "documentary", "name": "Documentary", "slug": "documentary"},
    {"id": "sci-fi-fantasy", "name": "Sci-Fi & Fantasy", "slug": "sci-fi-fantasy"},
    {"id": "animation", "name": "Animation", "slug": "animation"},
    {"id": "sports", "name": "Sports", "slug": "sports"},
    {"id": "western", "name": "Western", "slug": "western"},
    {"id": "war-politics", "name": "War & Politics", "slug": "war-politics"},
]

CATEGORY_LABELS = {category["name"].lower() for category in MOVIE_CATEGORIES}

GENERIC_TITLE_RE = re.compile(
    r'^(movie|film|video|item|genres?|category|categories|latest movies|year|all movies)$',
    re.IGNORECASE,
)

ITEM_SELECTORS = [
    "article.movie-item",
    ".movie-item",
    "article",
    ".item-movie",
    "[class*='movie']",
    "[class*='item']",
]

PAGINATION_SELECTOR = "a[href*='/page/'], .pagination a, .page-numbers a, nav a[href*='page']"

YEAR_RE = re.compile(r'\b(?:19|20)\d{2}\b')
PAGE_HREF_RE = re.compile(r'/page/(\d+)/')
PARENTHETICAL_RE = re.compile(r'\s*\([^)]*\)\s*')
LANGUAGE_TOKEN_RE = re.compile(r'\s*\b(hindi|english)\b\s*', re.IGNORECASE)

DEFAULT_LANGUAGE = "English"
NOMINAL_PAGE_SIZE = 10
ESTIMATED_PAGE_COUNT = 50


# Helper function to create a slug from a title
def create_slug(text: str) -> str:
    """
    'Troll 2' -> 'troll-2'
    'Mission: Impossible' -> 'mission-impossible'
    """
    return re.sub(r'[^a-z0-9]+', '-', text.lower()).strip('-')


# Helper function to convert a slug to Title-Case-With-Hyphens
def title_case_slug(slug: str) -> str:
    return '-'.join(word[:1].upper() + word[1:] for word in slug.split('-') if word)


def extract_year(raw_title: str) -> Optional[str]:
    match = YEAR_RE.search(raw_title)
    return match.group(0) if match else None


def canonical_title(raw_title: str) -> str:
    """Drop parenthetical content and language tokens: 'Troll 2 (2025) Hindi' -> 'Troll 2'."""
    title = PARENTHETICAL_RE.sub(' ', raw_title)
    title = LANGUAGE_TOKEN_RE.sub(' ', title)
    return re.sub(r'\s+', ' ', title).strip()


def detect_language(raw_title: str, detail_url: str) -> Tuple[str, bool]:
    """Return (language, detected); undetected items default to English."""
    slug = create_slug(PARENTHETICAL_RE.sub(' ', raw_title))
    haystacks = [raw_title.lower(), detail_url.lower(), slug]
    if any('hindi' in text for text in haystacks):
        return 'Hindi', True
    if any('english' in text for text in haystacks):
        return 'English', True
    return DEFAULT_LANGUAGE, False


def is_valid_title(title: Optional[str]) -> bool:
    if not title:
        return False
    title = title.strip()
    if len(title) <= 2:
        return False
    if re.fullmatch(r'\d{4}', title):
        return False
    if title.lower() in CATEGORY_LABELS:
        return False
    return not GENERIC_TITLE_RE.match(title)


def is_valid_detail_url(url: Optional[str]) -> bool:
    return bool(url) and url != '#' and url.startswith(('http://', 'https://'))


def find_items(soup: BeautifulSoup) -> List[Tag]:
    for selector in ITEM_SELECTORS:
        items = soup.select(selector)
        if items:
            logger.debug(f"Found {len(items)} listing items with selector {selector!r}")
            return items
    return []


def detect_max_page(soup: BeautifulSoup, item_count: int, full_page_size: int = NOMINAL_PAGE_SIZE,
                    estimated_pages: int = ESTIMATED_PAGE_COUNT) -> int:
    """
    Largest page number linked from the page.

    When no page links exist but the page is full, the real count is unknown;
    `estimated_pages` is returned as an approximation so that multi-page
    catalogs rendered without page numbers are not cut to one page.
    """
    max_page = 1
    for link in soup.select(PAGINATION_SELECTOR):
        href_match = PAGE_HREF_RE.search(link.get('href') or '')
        if href_match:
            max_page = max(max_page, int(href_match.group(1)))
        text = link.get_text(strip=True)
        if text.isdigit():
            max_page = max(max_page, int(text))
    if max_page == 1 and item_count >= full_page_size:
        logger.info(f"No pagination links on a full page ({item_count} items), estimating {estimated_pages} pages")
        max_page = estimated_pages
    return max_page


def _new_entry(key: Tuple[str, str], title: str, year: Optional[str], fields: dict,
               language: str) -> CatalogEntry:
    slug = create_slug(title)
    return CatalogEntry(
        id=f"{create_slug(key[0]) or 'entry'}-{key[1]}",
        title=title,
        year=year,
        image_url=fields['image_url'],
        detail_url=fields['detail_url'] or '',
        rating=fields['rating'],
        runtime=fields['runtime'],
        genres=fields['genres'],
        audio_tracks=[AudioTrack(language=language, source_url=fields['detail_url'] or '', label=language)],
        slug=slug,
        clean_slug=title_case_slug(slug),
    )


def extract(html: str, page_origin: str, full_page_size: int = NOMINAL_PAGE_SIZE,
            estimated_pages: int = ESTIMATED_PAGE_COUNT) -> Tuple[List[CatalogEntry], int]:
    """
    Parse a listing page into (entries, max_page).

    Entries come back in document order. Items sharing canonical title and year
    are folded into the first one, adding an audio track per new language.
    Items that fail to parse are logged and skipped.
    """
    soup = BeautifulSoup(html, 'html.parser')
    items = find_items(soup)
    if not items:
        logger.warning("No listing items found on the page")

    entries: Dict[Tuple[str, str], CatalogEntry] = {}
    for index, item in enumerate(items):
        try:
            fields = parse_item(item, page_origin)
            raw_title = fields['title'] or ''
            detail_url = fields['detail_url'] or ''
            year = extract_year(raw_title)
            language, detected = detect_language(raw_title, detail_url)
            title = canonical_title(raw_title)
            # Invalid items must not claim a merge key a real item could use
            if not is_valid_title(title) or not is_valid_detail_url(detail_url):
                logger.debug(f"Skipping listing item {index}: title {title!r}, link {detail_url!r}")
                continue
            key = (title.lower(), year or 'unknown')

            existing = entries.get(key)
            if existing is None:
                entries[key] = _new_entry(key, title, year, fields, language)
                continue
            if detected and not existing.has_language(language):
                existing.audio_tracks.append(AudioTrack(language=language, source_url=detail_url, label=language))
            # Use better image if available
            if not existing.image_url and fields['image_url']:
                existing.image_url = fields['image_url']
        except Exception as e:
            logger.warning(f"Failed to parse listing item {index}: {e}")
            continue

    valid = [
        entry for entry in entries.values()
        if is_valid_title(entry.title) and is_valid_detail_url(entry.detail_url)
    ]
    max_page = detect_max_page(soup, len(items), full_page_size, estimated_pages)
    logger.debug(f"Parsed {len(valid)} entries (deduplicated and validated from {len(items)} items), max page {max_page}")
    return valid, max_page


def sort_by_year(entries: List[CatalogEntry]) -> List[CatalogEntry]:
    """Newest year first; entries without a year go last; ties keep their order."""
    return sorted(entries, key=lambda entry: (entry.year is None, -int(entry.year) if entry.year else 0))


# Helper function to normalize a category id or slug
def normalize_category(category: Optional[str]) -> str:
    if not category:
        return "all"
    category = re.sub(r'[^\w-]', '', category.strip().lower())
    return category or "all"


def category_slug(category: str) -> str:
    for known in MOVIE_CATEGORIES:
        if known["id"] == category:
            return known["slug"]
    return category


def build_listing_path(category: str = "all", page: int = 1, query: Optional[str] = None) -> str:
    """Path of a listing page on the catalog origin."""
    if query and query.strip():
        return f"/?s={quote(query.strip())}"
    slug = category_slug(normalize_category(category))
    prefix = f"/{slug}" if slug else ""
    if page <= 1:
        return f"{prefix}/"
    return f"{prefix}/page/{page}/"


# Helper function to fetch one catalog page (listing or detail)
async def fetch_page(path: str, resolver: UpstreamResolver) -> str:
    url = resolver.resolve(path)
    logger.info(f"Scraping URL: {url}")
    try:
        async with resolver.create_client() as client:
            response = await client.get(url)
            response.raise_for_status()
            if not response.text:
                logger.warning(f"Empty response from {url}")
            return response.text
    except HTTPStatusError as e:
        status_code = e.response.status_code if e.response is not None else 502
        logger.error(f"HTTP error {status_code} while scraping {url}: {e}")
        if status_code == 404:
            raise HTTPException(status_code=404, detail=f"Page not found: {path}")
        raise HTTPException(status_code=502, detail=f"Failed to fetch data: upstream returned {status_code}")
    except RequestError as e:
        logger.error(f"Network error while scraping {url}: {e}")
        raise HTTPException(status_code=503, detail="Network error while contacting the catalog")
    except Exception as e:
        logger.exception(f"Unexpected error while scraping {url}: {e}")
        raise HTTPException(status_code=500, detail=f"Scraping error: {type(e).__name__}")


async def scrape_catalog(resolver: UpstreamResolver, settings: Settings, category: str = "all", page: int = 1,
                         query: Optional[str] = None) -> CatalogPage:
    if page < 1:
        raise HTTPException(status_code=400, detail="Page must be a positive integer")

    is_search = bool(query and query.strip())
    path = build_listing_path(category, page, query)
    html = await fetch_page(path, resolver)

    entries, max_page = extract(html, resolver.origin, settings.full_page_size, settings.estimated_page_count)
    if is_search:
        # Searches do not paginate
        max_page = 1
    entries = sort_by_year(entries)
    logger.info(f"Scraped {len(entries)} entries for category {category}, page {page}, query {query!r}")
    return CatalogPage(
        entries=entries,
        page=page,
        max_page=max_page,
        category="search" if is_search else normalize_category(category),
        query=query.strip() if is_search else None,
        has_more=page < max_page and bool(entries),
    )
