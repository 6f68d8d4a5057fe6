from mediator.utils.text import REDACTED, redact, summarize, truncate_bytes, truncate_chars


def test_truncate_chars_marks_the_cut() -> None:
    assert truncate_chars("abcdef", 10) == "abcdef"
    assert truncate_chars("abcdef", 4) == "abc…"
    assert truncate_chars("abcdef", 0) == ""


def test_truncate_bytes_never_splits_characters() -> None:
    assert truncate_bytes("héllo", 2) == "h"
    assert truncate_bytes("héllo", 3) == "hé"
    assert len(truncate_bytes("日本語テキスト", 10).encode("utf-8")) <= 10


def test_redact_masks_secrets_and_addresses() -> None:
    text = "contact ops@example.com with Bearer abcdefghijklmnop1234 and sk-live_abcdefghijklmnop"
    cleaned = redact(text)

    assert "ops@example.com" not in cleaned
    assert "abcdefghijklmnop1234" not in cleaned
    assert "sk-live_abcdefghijklmnop" not in cleaned
    assert cleaned.count(REDACTED) == 3


def test_summarize_collapses_whitespace() -> None:
    assert summarize("a\n\n  b\tc", 100) == "a b c"
    assert summarize("token 0123456789abcdef0123456789abcdef", 100, redact_sensitive=False).endswith("abcdef")
