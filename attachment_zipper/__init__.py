"""Search a mailbox and bundle matching attachments into a ZIP archive."""

__version__ = "0.1.0"
