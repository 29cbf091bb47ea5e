"""
Travel folder ingestion.

Stores a parsed travel folder in the enquiry tables. The enquiry row is
keyed by its source booking id and created only once; the one-to-one
child rows are updated in place on re-ingestion and passengers are only
ever added. Statements are not wrapped in a transaction; a file that
failed part-way is completed by ingesting it again.
"""

import logging
import os
import re
import threading
import time
from typing import Iterable, List, Optional, Union

from enquiry_sync.core.db_gateway import ConnectionHandle, DatabaseGateway
from enquiry_sync.core.schema import ensure_tables_exist
from enquiry_sync.core.travel_folder import TravelFolder, parse_travel_folder, passenger_key
from enquiry_sync.exceptions import IntegrityError
from enquiry_sync.utils import run_with_concurrency_limit

# Configure logging
logger = logging.getLogger(__name__)
audit_logger = logging.getLogger("enquiry_sync.audit")

MAX_ERROR_LENGTH = 500


def _bit(value) -> int:
    return 1 if value else 0


class EnquiryIngestor:
    """Reconciles parsed travel folders against the enquiry tables.

    Attributes:
        gateway: Database gateway used for every statement
        database: Optional database overriding the gateway profile
    """

    def __init__(self, gateway: DatabaseGateway, database: Optional[str] = None):
        self.gateway = gateway
        self.database = database
        self._schema_ready = False
        self._schema_lock = threading.Lock()
        self._store_lock = threading.Lock()

    @property
    def schema_ready(self) -> bool:
        return self._schema_ready

    def _connect(self) -> ConnectionHandle:
        return self.gateway.connect(database=self.database)

    def ensure_schema(self, handle: Optional[ConnectionHandle] = None) -> None:
        """Create the enquiry tables if needed; a no-op after the first success."""
        if self._schema_ready:
            return
        with self._schema_lock:
            if self._schema_ready:
                return
            ensure_tables_exist(self.gateway, handle or self._connect())
            self._schema_ready = True

    def ingest(self, payload: Union[str, bytes], source_file_name: str) -> bool:
        """Parse and store one travel folder.

        Never raises: failures are logged and reported as False so a batch
        of files can carry on.

        Args:
            payload: XML document
            source_file_name: Name of the file the payload came from

        Returns:
            bool: True if the enquiry was created by this call
        """
        started = time.monotonic()
        try:
            folder = parse_travel_folder(payload, source_file_name)
            handle = self._connect()
            self.ensure_schema(handle)
            with self._store_lock:
                is_new = self._store(handle, folder)
        except Exception as e:
            self._record_outcome(source_file_name, "FAILED", started, str(e))
            logger.exception(f"Failed to save parsed travel folder {source_file_name}")
            return False

        self._record_outcome(source_file_name, "SUCCESS" if is_new else "SKIPPED", started)
        return is_new

    def ingest_file(self, path: str) -> bool:
        """Read a local payload file and ingest it."""
        file_name = os.path.basename(path)
        try:
            with open(path, "rb") as f:
                payload = f.read()
        except OSError as e:
            self._record_outcome(file_name, "FAILED", time.monotonic(), str(e))
            logger.error(f"Could not read {path}: {e}")
            return False
        return self.ingest(payload, file_name)

    def ingest_files(self, paths: Iterable[str], workers: int = 4) -> List[bool]:
        """Ingest several files with at most ``workers`` in flight.

        Returns:
            List[bool]: One result per path, in input order
        """
        paths = list(paths)
        results = run_with_concurrency_limit(paths, workers, self.ingest_file)
        created = sum(1 for r in results if r)
        logger.info(f"Ingested {len(paths)} files: {created} new enquiries")
        return results

    def _record_outcome(
        self, file_name: str, status: str, started: float, error: Optional[str] = None
    ) -> None:
        elapsed_ms = int((time.monotonic() - started) * 1000)
        entry = f"{file_name} - {status} - {elapsed_ms}ms"
        if error and status == "FAILED":
            sanitized = re.sub(r"\s+", " ", error)[:MAX_ERROR_LENGTH]
            entry += f" - ERROR: {sanitized}"
        audit_logger.info(entry)

    def _store(self, handle: ConnectionHandle, folder: TravelFolder) -> bool:
        enquiry_id, is_new = self._upsert_enquiry(handle, folder)
        self._upsert_trip_details(handle, enquiry_id, folder)
        self._upsert_customer(handle, enquiry_id, folder)
        self._upsert_marketing(handle, enquiry_id, folder)
        self._insert_missing_passengers(handle, enquiry_id, folder)
        return is_new

    def _upsert_enquiry(self, handle: ConnectionHandle, folder: TravelFolder):
        enquiry = folder.enquiry
        existing = self.gateway.execute(
            handle,
            "SELECT TOP 1 ID FROM ENQUIRIES WHERE SOURCE_BOOKING_ID = ?",
            [enquiry.source_booking_id],
        )
        if existing:
            logger.debug(
                f"Enquiry {enquiry.source_booking_id} already exists, "
                f"continuing to ensure all child data is present"
            )
            return existing[0]["ID"], False

        logger.debug(f"Inserting new enquiry {enquiry.source_booking_id}")
        inserted = self.gateway.execute(
            handle,
            """
            INSERT INTO ENQUIRIES
              (SOURCE_BOOKING_ID, DEPARTURE_DATE, CREATE_DATE, [STATUS], IS_QUOTE_ONLY,
               DESTINATION_NAME, DESTINATION_COUNTRY, AIRPORT, SOURCE_TYPE)
            OUTPUT INSERTED.ID AS ID
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            [
                enquiry.source_booking_id,
                enquiry.departure_date,
                enquiry.create_date,
                enquiry.status,
                _bit(enquiry.is_quote_only),
                enquiry.destination_name,
                enquiry.destination_country,
                enquiry.airport,
                enquiry.source_type,
            ],
        )
        if not inserted or inserted[0].get("ID") is None:
            raise IntegrityError("Insert into ENQUIRIES did not return an inserted ID")
        return inserted[0]["ID"], True

    def _row_exists(self, handle: ConnectionHandle, table: str, enquiry_id: int) -> bool:
        rows = self.gateway.execute(
            handle, f"SELECT TOP 1 ID FROM {table} WHERE ENQUIRY_ID = ?", [enquiry_id]
        )
        return bool(rows)

    def _upsert_trip_details(self, handle, enquiry_id: int, folder: TravelFolder) -> None:
        trip = folder.trip_details
        values = [
            trip.hotel,
            trip.nights,
            trip.golfers,
            trip.non_golfers,
            trip.rounds,
            trip.adults,
            trip.children,
            trip.holiday_plans,
            trip.budget_from,
            trip.budget_to,
        ]
        if self._row_exists(handle, "TRIP_DETAILS", enquiry_id):
            self.gateway.execute(
                handle,
                """
                UPDATE TRIP_DETAILS
                SET HOTEL = ?, NIGHTS = ?, GOLFERS = ?, NON_GOLFERS = ?, ROUNDS = ?,
                    ADULTS = ?, CHILDREN = ?, HOLIDAY_PLANS = ?, BUDGET_FROM = ?, BUDGET_TO = ?
                WHERE ENQUIRY_ID = ?
                """,
                values + [enquiry_id],
            )
        else:
            self.gateway.execute(
                handle,
                """
                INSERT INTO TRIP_DETAILS
                  (ENQUIRY_ID, HOTEL, NIGHTS, GOLFERS, NON_GOLFERS, ROUNDS, ADULTS,
                   CHILDREN, HOLIDAY_PLANS, BUDGET_FROM, BUDGET_TO)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [enquiry_id] + values,
            )

    def _upsert_customer(self, handle, enquiry_id: int, folder: TravelFolder) -> None:
        customer = folder.customer
        values = [
            customer.given_name,
            customer.surname,
            customer.email,
            customer.phone_number,
            _bit(customer.newsletter_opt_in),
        ]
        if self._row_exists(handle, "CUSTOMERS", enquiry_id):
            self.gateway.execute(
                handle,
                """
                UPDATE CUSTOMERS
                SET GIVEN_NAME = ?, SURNAME = ?, EMAIL = ?, PHONE_NUMBER = ?, NEWSLETTER_OPT_IN = ?
                WHERE ENQUIRY_ID = ?
                """,
                values + [enquiry_id],
            )
        else:
            self.gateway.execute(
                handle,
                """
                INSERT INTO CUSTOMERS
                  (ENQUIRY_ID, GIVEN_NAME, SURNAME, EMAIL, PHONE_NUMBER, NEWSLETTER_OPT_IN)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                [enquiry_id] + values,
            )

    def _upsert_marketing(self, handle, enquiry_id: int, folder: TravelFolder) -> None:
        marketing = folder.marketing
        values = [marketing.campaign_code, marketing.source, marketing.medium, marketing.ad_id]
        if self._row_exists(handle, "MARKETING", enquiry_id):
            self.gateway.execute(
                handle,
                """
                UPDATE MARKETING
                SET CAMPAIGN_CODE = ?, SOURCE = ?, MEDIUM = ?, AD_ID = ?
                WHERE ENQUIRY_ID = ?
                """,
                values + [enquiry_id],
            )
        else:
            self.gateway.execute(
                handle,
                """
                INSERT INTO MARKETING (ENQUIRY_ID, CAMPAIGN_CODE, SOURCE, MEDIUM, AD_ID)
                VALUES (?, ?, ?, ?, ?)
                """,
                [enquiry_id] + values,
            )

    def _insert_missing_passengers(self, handle, enquiry_id: int, folder: TravelFolder) -> int:
        existing = self.gateway.execute(
            handle,
            "SELECT GIVEN_NAME, SURNAME FROM PASSENGERS WHERE ENQUIRY_ID = ?",
            [enquiry_id],
        )
        known = {passenger_key(row.get("GIVEN_NAME"), row.get("SURNAME")) for row in existing}

        inserted = 0
        for passenger in folder.passengers:
            if passenger.key in known:
                continue
            self.gateway.execute(
                handle,
                "INSERT INTO PASSENGERS (ENQUIRY_ID, GIVEN_NAME, SURNAME) VALUES (?, ?, ?)",
                [enquiry_id, passenger.given_name, passenger.surname],
            )
            known.add(passenger.key)
            inserted += 1

        if inserted:
            logger.debug(f"Added {inserted} passengers to enquiry {enquiry_id}")
        return inserted
