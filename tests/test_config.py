"""
Test environment parsing helpers.
"""

from notifier.config import get_env_bool, get_env_float, get_env_int


def test_env_int(monkeypatch):
    monkeypatch.setenv("NOTIFIER_TEST_INT", " 42 ")
    assert get_env_int("NOTIFIER_TEST_INT", 1) == 42

    monkeypatch.setenv("NOTIFIER_TEST_INT", "forty-two")
    assert get_env_int("NOTIFIER_TEST_INT", 1) == 1

    monkeypatch.delenv("NOTIFIER_TEST_INT")
    assert get_env_int("NOTIFIER_TEST_INT", 7) == 7


def test_env_float(monkeypatch):
    monkeypatch.setenv("NOTIFIER_TEST_FLOAT", "0.5")
    assert get_env_float("NOTIFIER_TEST_FLOAT", 1.0) == 0.5

    monkeypatch.setenv("NOTIFIER_TEST_FLOAT", "soon")
    assert get_env_float("NOTIFIER_TEST_FLOAT", 1.0) == 1.0


def test_env_bool(monkeypatch):
    monkeypatch.setenv("NOTIFIER_TEST_BOOL", "TRUE")
    assert get_env_bool("NOTIFIER_TEST_BOOL", False) is True

    monkeypatch.setenv("NOTIFIER_TEST_BOOL", "yes")
    assert get_env_bool("NOTIFIER_TEST_BOOL", True) is False

    monkeypatch.delenv("NOTIFIER_TEST_BOOL")
    assert get_env_bool("NOTIFIER_TEST_BOOL", True) is True
