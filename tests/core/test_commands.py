import pytest

from accountlink.core.commands import (
    CANCEL,
    RESEND,
    START,
    is_valid_code,
    is_valid_email,
    normalize_code,
    normalize_email,
    parse_command,
)
from accountlink.core.replies import render


@pytest.mark.parametrize(
    "text,expected",
    [
        ("/start", START),
        ("  /START  ", START),
        ("/start@FoodShareBot", START),
        ("/start deep-link-payload", START),
        ("/resend", RESEND),
        ("/cancel", CANCEL),
        ("/help", None),
        ("start", None),
        ("", None),
    ],
)
def test_parse_command(text, expected):
    assert parse_command(text) == expected


def test_normalize_email():
    assert normalize_email("  Ada@Example.COM\n") == "ada@example.com"


@pytest.mark.parametrize(
    "email,ok",
    [
        ("ada@example.com", True),
        ("a.b+tag@sub.example.org", True),
        ("ada@example", False),
        ("ada@@example.com", False),
        ("ada example@example.com", False),
        ("@example.com", False),
        ("", False),
    ],
)
def test_is_valid_email(email, ok):
    assert is_valid_email(email) is ok


def test_code_normalisation():
    assert normalize_code("123 456") == "123456"
    assert normalize_code("123-456") == "123456"
    assert is_valid_code("123456")
    assert not is_valid_code("12345")
    assert not is_valid_code("1234567")
    assert not is_valid_code("12a456")
    # Unicode digits are not ASCII codes
    assert not is_valid_code("\u0661\u0662\u0663\u0664\u0665\u0666")
    assert not is_valid_code("\uff11\uff12\uff13\uff14\uff15\uff16")


def test_render_fills_fields_and_tolerates_missing():
    assert "ada@example.com" in render("code_sent_register", email="ada@example.com", minutes=15)
    assert "{attemptsLeft}" in render("code_mismatch")
    assert render("no_such_outcome") == ""
