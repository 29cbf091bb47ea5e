"""
Enquiry synchronization service.

Downloads database backups and enquiry payloads from an SFTP server into
local directories, then ingests the enquiry XML files ("travel folders")
into SQL Server without duplicating records across runs.
"""

__version__ = "0.1.0"
