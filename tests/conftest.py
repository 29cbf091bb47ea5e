"""
Shared fixtures for the enquiry sync tests.
"""

import pytest

from tests.fakes import FakeEnquiryDatabase


@pytest.fixture
def fake_db():
    return FakeEnquiryDatabase()
