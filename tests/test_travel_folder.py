"""
Tests for travel folder parsing.
"""

from datetime import datetime
import xml.etree.ElementTree as ET

import pytest

from enquiry_sync.core.travel_folder import (
    parse_budget,
    parse_comment_pairs,
    parse_date,
    parse_flag,
    parse_int,
    parse_travel_folder,
)

from tests.fakes import travel_folder_xml


class TestCommentPairs:
    """Test cases for comment key/value extraction."""

    def test_colon_and_space_separated_pairs(self):
        pairs = parse_comment_pairs("Hotel: Pine Cliffs | Non Golfers: 2 | Rounds 3")

        assert pairs == {"hotel": "Pine Cliffs", "non golfers": "2", "rounds": "3"}

    def test_html_entities_are_decoded(self):
        pairs = parse_comment_pairs("Hotel: Caf&eacute; Royal &amp; Spa")

        assert pairs["hotel"] == "Café Royal & Spa"

    def test_last_duplicate_wins(self):
        pairs = parse_comment_pairs("Nights: 7 | nights: 10")

        assert pairs["nights"] == "10"

    def test_empty_segments_are_ignored(self):
        assert parse_comment_pairs(" | |Adults: 2|") == {"adults": "2"}


class TestValueParsers:
    def test_budget_range(self):
        assert parse_budget("Golfers: 2 | Budget: £1,500pp - £2,000pp") == (1500.0, 2000.0)
        assert parse_budget("budget : 800pp-950pp") == (800.0, 950.0)
        assert parse_budget("No budget given") == (None, None)

    def test_leading_integer(self):
        assert parse_int("7 nights") == 7
        assert parse_int("0") == 0
        assert parse_int("abc") is None
        assert parse_int(None) is None

    def test_dates(self):
        assert parse_date("2025-06-14") == datetime(2025, 6, 14)
        assert parse_date("2025-01-02T10:30:00Z").tzinfo is not None
        assert parse_date("2025-01-02T10:30:00.1234567") == datetime(2025, 1, 2, 10, 30, 0, 123456)
        assert parse_date("not a date") is None
        assert parse_date("") is None

    def test_flags(self):
        assert parse_flag("true") is True
        assert parse_flag("Y") is True
        assert parse_flag("false") is False
        assert parse_flag("0") is False
        assert parse_flag(None) is False


class TestParseTravelFolder:
    """Test cases for parse_travel_folder."""

    def test_full_document(self):
        folder = parse_travel_folder(travel_folder_xml(), "EGR_20250102.xml")

        enquiry = folder.enquiry
        assert enquiry.source_booking_id == "BK-1001"
        assert enquiry.departure_date == datetime(2025, 6, 14)
        assert enquiry.create_date == datetime(2025, 1, 2, 10, 30)
        assert enquiry.status == "Enquiry"
        assert enquiry.is_quote_only is True
        assert enquiry.destination_name == "Algarve"
        assert enquiry.destination_country == "PT"
        assert enquiry.source_type == "EGR"

        trip = folder.trip_details
        assert trip.hotel == "Pine Cliffs"
        assert trip.nights == 7
        assert trip.golfers == 2
        assert trip.non_golfers is None
        assert (trip.budget_from, trip.budget_to) == (1500.0, 2000.0)

        assert folder.customer.email == "john@example.com"
        assert folder.customer.phone_number == "0123456789"
        assert folder.customer.newsletter_opt_in is True

        assert folder.marketing.campaign_code == "SPRING25"
        assert folder.marketing.source == "google"
        assert folder.marketing.medium == "cpc"
        assert folder.marketing.ad_id == "ad-42"

        assert [(p.given_name, p.surname) for p in folder.passengers] == [
            ("John", "Smith"),
            ("Jane", "Smith"),
        ]

    def test_single_passenger(self):
        folder = parse_travel_folder(travel_folder_xml(passengers=[("Ann", "Lee")]), "x.xml")

        assert len(folder.passengers) == 1
        assert folder.passengers[0].key == ("ann", "lee")

    def test_unparseable_numbers_become_none(self):
        folder = parse_travel_folder(
            travel_folder_xml(comments=["Nights: lots | Adults: 0 | Children: ?"]), "x.xml"
        )

        assert folder.trip_details.nights is None
        assert folder.trip_details.adults == 0
        assert folder.trip_details.children is None
        assert folder.trip_details.hotel == ""

    def test_file_name_without_source_type(self):
        folder = parse_travel_folder(travel_folder_xml(), "enquiry_123.xml")

        assert folder.enquiry.source_type == ""

    def test_namespaces_and_attributes(self):
        payload = """
        <ns:DTM_TravelFolder xmlns:ns="urn:dolphin">
          <ns:TravelFolder SourceBookingID="BK-9" WorkflowStatus="Quote">
            <ns:PassengerListItems/>
          </ns:TravelFolder>
        </ns:DTM_TravelFolder>
        """

        folder = parse_travel_folder(payload, "LWC_1.xml")

        assert folder.enquiry.source_booking_id == "BK-9"
        assert folder.enquiry.status == "Quote"
        assert folder.enquiry.source_type == "LWC"
        assert folder.passengers == []

    def test_wrong_root_element(self):
        with pytest.raises(ValueError, match="DTM_TravelFolder"):
            parse_travel_folder("<Booking><TravelFolder/></Booking>", "x.xml")

    def test_missing_booking_id(self):
        with pytest.raises(ValueError, match="SourceBookingID"):
            parse_travel_folder("<DTM_TravelFolder><TravelFolder/></DTM_TravelFolder>", "x.xml")

    def test_malformed_xml(self):
        with pytest.raises(ET.ParseError):
            parse_travel_folder("<DTM_TravelFolder>", "x.xml")
