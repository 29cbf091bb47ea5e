"""
Travel folder XML parsing.

Turns one ``DTM_TravelFolder`` payload into the record graph stored by the
ingestion engine: the enquiry header plus trip details, customer contact,
marketing data and the passenger list.
"""

import html
import logging
import re
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Union

import dateutil.parser

from enquiry_sync.utils import source_type_from_file_name

logger = logging.getLogger(__name__)

ROOT_TAG = "DTM_TravelFolder"
FOLDER_TAG = "TravelFolder"

BUDGET_PATTERN = re.compile(r"Budget\s*:\s*£?([\d,]+)pp\s*-\s*£?([\d,]+)pp", re.IGNORECASE)
_LEADING_INT = re.compile(r"^\s*([-+]?\d+)")

_FALSE_VALUES = {"", "false", "0", "no", "n"}


@dataclass
class Enquiry:
    source_booking_id: str
    departure_date: Optional[datetime] = None
    create_date: Optional[datetime] = None
    status: Optional[str] = None
    is_quote_only: bool = False
    destination_name: Optional[str] = None
    destination_country: str = ""
    airport: Optional[str] = None
    source_type: str = ""


@dataclass
class TripDetails:
    hotel: str = ""
    nights: Optional[int] = None
    golfers: Optional[int] = None
    non_golfers: Optional[int] = None
    rounds: Optional[int] = None
    adults: Optional[int] = None
    children: Optional[int] = None
    holiday_plans: Optional[str] = None
    airport: Optional[str] = None
    budget_from: Optional[float] = None
    budget_to: Optional[float] = None


@dataclass
class CustomerContact:
    given_name: Optional[str] = None
    surname: Optional[str] = None
    email: Optional[str] = None
    phone_number: Optional[str] = None
    newsletter_opt_in: bool = False


@dataclass
class Marketing:
    campaign_code: Optional[str] = None
    source: Optional[str] = None
    medium: Optional[str] = None
    ad_id: Optional[str] = None


@dataclass
class Passenger:
    given_name: Optional[str] = None
    surname: Optional[str] = None

    @property
    def key(self) -> tuple:
        """Case-insensitive natural key within an enquiry."""
        return passenger_key(self.given_name, self.surname)


@dataclass
class TravelFolder:
    """The full record graph parsed from one payload."""

    enquiry: Enquiry
    trip_details: TripDetails
    customer: CustomerContact
    marketing: Marketing
    passengers: List[Passenger] = field(default_factory=list)


def passenger_key(given_name: Optional[str], surname: Optional[str]) -> tuple:
    return ((given_name or "").lower(), (surname or "").lower())


def _strip_namespaces(root: ET.Element) -> None:
    for elem in root.iter():
        if "}" in elem.tag:
            elem.tag = elem.tag.split("}", 1)[1]


def _value(elem: Optional[ET.Element], *path: str) -> Optional[str]:
    """Look up a value by path; the last step may be a child element or an attribute."""
    for name in path[:-1]:
        if elem is None:
            return None
        elem = elem.find(name)
    if elem is None:
        return None
    child = elem.find(path[-1])
    if child is not None:
        return (child.text or "").strip()
    return elem.get(path[-1])


def _or_none(value: Optional[str]) -> Optional[str]:
    return value if value else None


def parse_int(value: Optional[str]) -> Optional[int]:
    """Parse the leading integer of a value; None when there is none."""
    if not value:
        return None
    match = _LEADING_INT.match(value)
    return int(match.group(1)) if match else None


def parse_amount(value: str) -> Optional[float]:
    try:
        return float(value.replace(",", ""))
    except ValueError:
        return None


def parse_date(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO-8601 date or timestamp; None when absent or malformed.

    Fractions longer than microseconds (``.0000000`` exports) are truncated.
    """
    if not value or not value.strip():
        return None
    try:
        return dateutil.parser.isoparse(value.strip())
    except ValueError:
        logger.warning(f"Ignoring unparseable date: {value!r}")
        return None


def parse_flag(value: Optional[str]) -> bool:
    return value is not None and value.strip().lower() not in _FALSE_VALUES


def parse_comment_pairs(text: str) -> Dict[str, str]:
    """Split pipe-delimited ``key: value`` / ``key value`` comment text into a dict.

    Keys are lower-cased and values HTML-entity decoded. When a key
    repeats, the last occurrence wins.
    """
    pairs: Dict[str, str] = {}
    for part in text.split("|"):
        part = part.strip()
        if not part:
            continue

        if ":" in part:
            key, _, value = part.partition(":")
        elif " " in part:
            key, _, value = part.partition(" ")
        else:
            key, value = part, ""

        key = key.strip().lower()
        if key:
            pairs[key] = html.unescape(value.strip())
    return pairs


def parse_budget(text: str) -> tuple:
    """Extract the ``Budget: £from pp - £to pp`` range from comment text."""
    match = BUDGET_PATTERN.search(text)
    if not match:
        return None, None
    return parse_amount(match.group(1)), parse_amount(match.group(2))


def _comment_text(folder: ET.Element) -> str:
    items = folder.findall("ReservationCommentItems/ReservationCommentItem")
    texts = [_value(item, "Text") or "" for item in items]
    return " | ".join(texts)


def parse_travel_folder(payload: Union[str, bytes], file_name: str) -> TravelFolder:
    """Parse a travel folder payload.

    Args:
        payload: XML document text or bytes
        file_name: Name of the source file, used to derive the source type

    Returns:
        TravelFolder: The parsed record graph

    Raises:
        ValueError: If the document is not a travel folder or lacks a booking id
        xml.etree.ElementTree.ParseError: If the payload is not well-formed XML
    """
    root = ET.fromstring(payload)
    _strip_namespaces(root)

    if root.tag != ROOT_TAG:
        raise ValueError(f"Expected <{ROOT_TAG}> root element, found <{root.tag}>")
    folder = root.find(FOLDER_TAG)
    if folder is None:
        raise ValueError(f"<{ROOT_TAG}> has no <{FOLDER_TAG}> element")

    source_booking_id = _value(folder, "SourceBookingID")
    if not source_booking_id:
        raise ValueError("Travel folder has no SourceBookingID")

    raw_comments = _comment_text(folder)
    pairs = parse_comment_pairs(raw_comments)
    budget_from, budget_to = parse_budget(raw_comments)

    trip = TripDetails(
        hotel=pairs.get("hotel") or "",
        nights=parse_int(pairs.get("nights")),
        golfers=parse_int(pairs.get("golfers")),
        non_golfers=parse_int(pairs.get("non golfers")),
        rounds=parse_int(pairs.get("rounds")),
        adults=parse_int(pairs.get("adults")),
        children=parse_int(pairs.get("children")),
        holiday_plans=_or_none(pairs.get("holiday plans")),
        airport=_or_none(pairs.get("airport")),
        budget_from=budget_from,
        budget_to=budget_to,
    )

    enquiry = Enquiry(
        source_booking_id=source_booking_id,
        departure_date=parse_date(_value(folder, "BookingDepartureDate")),
        create_date=parse_date(_value(folder, "SourceBookingCreateDate")),
        status=_value(folder, "WorkflowStatus"),
        is_quote_only=(_value(folder, "IsQuoteOnly") or "").lower() == "true",
        destination_name=pairs.get("destination"),
        destination_country=_value(folder, "BookingDestinationCountryCode") or "",
        airport=trip.airport,
        source_type=source_type_from_file_name(file_name) or "",
    )

    customer_elem = folder.find("CustomerForBooking/DirectCustomer/Customer")
    customer = CustomerContact(
        given_name=_or_none(_value(customer_elem, "PersonName", "GivenName")),
        surname=_or_none(_value(customer_elem, "PersonName", "Surname")),
        email=_or_none(_value(customer_elem, "Email")),
        phone_number=_or_none(_value(customer_elem, "TelephoneInfo", "Telephone", "PhoneNumber")),
        newsletter_opt_in=parse_flag(
            _value(customer_elem, "CommunicationPreferences", "Newsletter")
        ),
    )

    marketing = Marketing(
        campaign_code=_value(folder, "MarketingCampaignCode"),
        source=_value(folder, "EnhancedData01"),
        medium=_value(folder, "EnhancedData02"),
        ad_id=_value(folder, "EnhancedData00"),
    )

    passengers = [
        Passenger(
            given_name=_or_none(_value(item, "PersonName", "GivenName")),
            surname=_or_none(_value(item, "PersonName", "Surname")),
        )
        for item in folder.findall("PassengerListItems/PassengerListItem")
    ]

    return TravelFolder(
        enquiry=enquiry,
        trip_details=trip,
        customer=customer,
        marketing=marketing,
        passengers=passengers,
    )
