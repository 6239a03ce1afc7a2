"""Tests for almanac.meeting_links.detect_meeting_link."""

from __future__ import annotations

import pytest

from almanac.meeting_links import detect_meeting_link

pytestmark = pytest.mark.unit


@pytest.mark.parametrize(
    ("text", "expected"),
    [
        ("Join https://meet.google.com/abc-defg-hij now", "https://meet.google.com/abc-defg-hij"),
        ("https://zoom.us/j/123456789?pwd=abc", "https://zoom.us/j/123456789?pwd=abc"),
        ("Dial in: https://acme.zoom.us/j/987", "https://acme.zoom.us/j/987"),
        (
            "https://teams.microsoft.com/l/meetup-join/19%3ameeting_abc%40thread.v2/0",
            "https://teams.microsoft.com/l/meetup-join/19%3ameeting_abc%40thread.v2/0",
        ),
        ("https://acme.webex.com/meet/jane.doe", "https://acme.webex.com/meet/jane.doe"),
        ("https://bluejeans.com/1234567", "https://bluejeans.com/1234567"),
        (
            "https://global.gotomeeting.com/join/123456789",
            "https://global.gotomeeting.com/join/123456789",
        ),
        ("https://meet.jit.si/team_sync", "https://meet.jit.si/team_sync"),
    ],
)
def test_recognised_services(text, expected):
    assert detect_meeting_link(text) == expected


def test_case_insensitive_host():
    assert detect_meeting_link("HTTPS://MEET.GOOGLE.COM/abc") == "HTTPS://MEET.GOOGLE.COM/abc"


def test_service_order_decides_between_multiple_links():
    text = "Backup: https://zoom.us/j/1\nMain: https://meet.google.com/xyz"
    assert detect_meeting_link(text) == "https://meet.google.com/xyz"


@pytest.mark.parametrize(
    "text",
    [
        None,
        "",
        "Room 4B, second floor",
        "https://example.com/meeting",
        "meet.google.com/abc without a scheme",
    ],
)
def test_no_link(text):
    assert detect_meeting_link(text) is None
