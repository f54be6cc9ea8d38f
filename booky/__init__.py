"""Swedish OSS and periodic summary filings from accounting facts, with notifications, a scheduler and an admin WSGI API."""

__version__ = "0.1.0"