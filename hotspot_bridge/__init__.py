"""Payment-to-access bridge for a captive WiFi portal."""

__version__ = "0.1.0"
