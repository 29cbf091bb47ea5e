"""
Enquiry table definitions.

Each statement creates its table only when it does not exist yet, so the
whole set can be applied any number of times.
"""

import logging
from typing import List, Tuple

logger = logging.getLogger(__name__)

ENQUIRIES_DDL = """
IF OBJECT_ID('ENQUIRIES', 'U') IS NULL
BEGIN
  CREATE TABLE ENQUIRIES (
    ID INT IDENTITY(1,1) PRIMARY KEY,
    SOURCE_BOOKING_ID NVARCHAR(100) NOT NULL,
    DEPARTURE_DATE DATETIME2 NULL,
    CREATE_DATE DATETIME2 NULL,
    [STATUS] NVARCHAR(50) NULL,
    IS_QUOTE_ONLY BIT NOT NULL DEFAULT 0,
    DESTINATION_NAME NVARCHAR(200) NULL,
    DESTINATION_COUNTRY NVARCHAR(10) NULL,
    AIRPORT NVARCHAR(100) NULL,
    SOURCE_TYPE NVARCHAR(50) NULL
  );

  CREATE UNIQUE INDEX UX_ENQUIRIES_SOURCE_BOOKING_ID
  ON ENQUIRIES (SOURCE_BOOKING_ID);
END
"""

TRIP_DETAILS_DDL = """
IF OBJECT_ID('TRIP_DETAILS', 'U') IS NULL
BEGIN
  CREATE TABLE TRIP_DETAILS (
    ID INT IDENTITY(1,1) PRIMARY KEY,
    ENQUIRY_ID INT NOT NULL,
    HOTEL NVARCHAR(200) NULL,
    NIGHTS INT NULL,
    GOLFERS INT NULL,
    NON_GOLFERS INT NULL,
    ROUNDS INT NULL,
    ADULTS INT NULL,
    CHILDREN INT NULL,
    HOLIDAY_PLANS NVARCHAR(MAX) NULL,
    BUDGET_FROM FLOAT NULL,
    BUDGET_TO FLOAT NULL,
    CONSTRAINT FK_TRIP_DETAILS_ENQUIRY
      FOREIGN KEY (ENQUIRY_ID) REFERENCES ENQUIRIES(ID)
      ON DELETE CASCADE
  );
END
"""

CUSTOMERS_DDL = """
IF OBJECT_ID('CUSTOMERS', 'U') IS NULL
BEGIN
  CREATE TABLE CUSTOMERS (
    ID INT IDENTITY(1,1) PRIMARY KEY,
    ENQUIRY_ID INT NOT NULL,
    GIVEN_NAME NVARCHAR(100) NULL,
    SURNAME NVARCHAR(100) NULL,
    EMAIL NVARCHAR(254) NULL,
    PHONE_NUMBER NVARCHAR(50) NULL,
    NEWSLETTER_OPT_IN BIT NOT NULL DEFAULT 0,
    CONSTRAINT FK_CUSTOMERS_ENQUIRY
      FOREIGN KEY (ENQUIRY_ID) REFERENCES ENQUIRIES(ID)
      ON DELETE CASCADE
  );
END
"""

MARKETING_DDL = """
IF OBJECT_ID('MARKETING', 'U') IS NULL
BEGIN
  CREATE TABLE MARKETING (
    ID INT IDENTITY(1,1) PRIMARY KEY,
    ENQUIRY_ID INT NOT NULL,
    CAMPAIGN_CODE NVARCHAR(100) NULL,
    SOURCE NVARCHAR(200) NULL,
    MEDIUM NVARCHAR(200) NULL,
    AD_ID NVARCHAR(200) NULL,
    CONSTRAINT FK_MARKETING_ENQUIRY
      FOREIGN KEY (ENQUIRY_ID) REFERENCES ENQUIRIES(ID)
      ON DELETE CASCADE
  );
END
"""

PASSENGERS_DDL = """
IF OBJECT_ID('PASSENGERS', 'U') IS NULL
BEGIN
  CREATE TABLE PASSENGERS (
    ID INT IDENTITY(1,1) PRIMARY KEY,
    ENQUIRY_ID INT NOT NULL,
    GIVEN_NAME NVARCHAR(100) NULL,
    SURNAME NVARCHAR(100) NULL,
    CONSTRAINT FK_PASSENGERS_ENQUIRY
      FOREIGN KEY (ENQUIRY_ID) REFERENCES ENQUIRIES(ID)
      ON DELETE CASCADE
  );

  CREATE INDEX IX_PASSENGERS_ENQUIRY_ID
  ON PASSENGERS (ENQUIRY_ID);
END
"""

# Parent first; children reference ENQUIRIES(ID).
TABLES: List[Tuple[str, str]] = [
    ("ENQUIRIES", ENQUIRIES_DDL),
    ("TRIP_DETAILS", TRIP_DETAILS_DDL),
    ("CUSTOMERS", CUSTOMERS_DDL),
    ("MARKETING", MARKETING_DDL),
    ("PASSENGERS", PASSENGERS_DDL),
]


def ensure_tables_exist(gateway, handle) -> None:
    """Create any missing enquiry table.

    Args:
        gateway: DatabaseGateway used to run the statements
        handle: Open connection handle
    """
    for table, ddl in TABLES:
        logger.debug(f"Ensuring table {table} exists")
        gateway.execute(handle, ddl)
    logger.info(f"Verified {len(TABLES)} enquiry tables")
