"""Parsing helpers for maps search result pages."""

import re
import urllib.parse

from bs4 import BeautifulSoup, Tag

from app.models.scraping import ScrapedBusiness

MAPS_SEARCH_URL = "https://www.google.com/maps/search/"
FEED_SELECTOR = 'div[role="feed"]'
CARD_SELECTOR = 'div[role="feed"] .Nv2PK'
END_OF_LIST_MARKERS = ("You've reached the end of the list", "No more results")

LOCATION_MARKERS = (
    "south africa",
    "gauteng",
    "western cape",
    "eastern cape",
    "northern cape",
    "free state",
    "kwazulu-natal",
    "limpopo",
    "mpumalanga",
    "north west",
    "northwest",
)

ADDRESS_KEYWORDS = re.compile(
    r"\b(street|st|ave|avenue|road|rd|drive|dr|lane|ln|way|blvd)\b", re.IGNORECASE
)
HOURS_PATTERN = re.compile(r"\b(open|opens|close|closes|closed|24 hours)\b", re.IGNORECASE)
RATING_PATTERN = re.compile(r"^(\d(\.\d)?|\(\d[\d,]*\))$")
PHONE_LIKE_PATTERN = re.compile(r"^[\d\s+()-]{7,}$")
PANEL_PHONE_PATTERN = re.compile(r"(?:\+27|0)[\s-]?\d{2}[\s-]?\d{3}[\s-]?\d{4}")


def clean_phone(phone: str | None) -> str:
    """Normalize a phone number to local digits, e.g. ``+27 82 123 4567`` -> ``0821234567``."""
    digits = re.sub(r"\D", "", phone or "")
    if digits.startswith("27"):
        digits = "0" + digits[2:]
    return digits


def build_search_query(industry: str, town: str) -> str:
    """Search text for one town and industry.

    Towns that already name a province or the country are used as is;
    otherwise ", South Africa" is appended. An empty industry searches for
    the town string directly (business-name search).
    """
    town = town.strip()
    if not industry:
        return town
    lowered = town.lower()
    if any(marker in lowered for marker in LOCATION_MARKERS):
        return f"{industry} in {town}"
    return f"{industry} in {town}, South Africa"


def build_search_url(query: str) -> str:
    return MAPS_SEARCH_URL + urllib.parse.quote(query, safe="")


def _text(tag: Tag | None) -> str:
    return tag.get_text(" ", strip=True) if tag else ""


def _leaf_spans(card: Tag) -> list[str]:
    texts = []
    for span in card.select(".W4Efsd span"):
        if span.find("span"):
            continue
        text = span.get_text(" ", strip=True).strip("· ").strip()
        if text:
            texts.append(text)
    return texts


def extract_address(spans: list[str], phone: str = "") -> str:
    """Pick the address out of a card's info spans.

    Opening hours, ratings, phone numbers and accessibility notes are
    skipped. Short spans without street words are categories.
    """
    for text in spans:
        lowered = text.lower()
        if text == phone or "wheelchair" in lowered or HOURS_PATTERN.search(text):
            continue
        if RATING_PATTERN.match(text) or PHONE_LIKE_PATTERN.match(text):
            continue
        if ADDRESS_KEYWORDS.search(text):
            return text
        if len(text.split()) <= 3:
            continue
        if len(text) > 10:
            return text
    return ""


def parse_result_cards(html: str, town: str, industry: str) -> list[ScrapedBusiness]:
    """Parse every result card in a list-view search page."""
    soup = BeautifulSoup(html, "html.parser")
    businesses = []

    for card in soup.select(CARD_SELECTOR):
        name = _text(card.select_one(".qBF1Pd"))
        if not name:
            continue

        link = card.select_one("a[href]")
        phone = _text(card.select_one(".W4Efsd .UsdlK")) or _text(card.select_one(".UsdlK"))

        businesses.append(
            ScrapedBusiness(
                name=name,
                phone=phone,
                address=extract_address(_leaf_spans(card), phone),
                maps_url=link["href"] if link else "",
                town=town,
                industry=industry,
            )
        )

    return businesses


def parse_single_business(
    html: str, town: str, industry: str, url: str = ""
) -> ScrapedBusiness | None:
    """Parse a page that opened straight on one business instead of a list."""
    soup = BeautifulSoup(html, "html.parser")
    main = soup.select_one('div[role="main"]') or soup

    name = _text(main.select_one("h1"))
    if not name:
        return None

    address_button = main.select_one('button[data-item-id="address"]')
    address = _text(address_button)
    if not address and address_button is not None:
        address = address_button.get("aria-label", "").replace("Address:", "").strip()

    phone = ""
    phone_button = main.select_one('button[data-item-id^="phone:tel:"]')
    if phone_button is not None:
        phone = phone_button.get("aria-label", "").replace("Phone:", "").strip()
        if not phone:
            phone = phone_button["data-item-id"].removeprefix("phone:tel:")
    if not phone:
        match = PANEL_PHONE_PATTERN.search(main.get_text(" ", strip=True))
        phone = match.group(0) if match else ""

    return ScrapedBusiness(
        name=name, phone=phone, address=address, maps_url=url, town=town, industry=industry
    )


def has_reached_end(html: str) -> bool:
    return any(marker in html for marker in END_OF_LIST_MARKERS)
