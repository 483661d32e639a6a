import hashlib

import pytest

from goodnews.utils.errors import ValidationError
from goodnews.utils.hashing import derive_article_id, is_valid_article_id, normalize_link, require_article_id


def test_derive_article_id_matches_sha256_prefix():
    url = "https://example.com/stories/dog-rescue"
    expected = hashlib.sha256(url.encode("utf-8")).hexdigest()[:32]
    assert derive_article_id(url) == expected


def test_derive_article_id_is_deterministic_lowercase_hex():
    article_id = derive_article_id("https://example.com/a")
    assert article_id == derive_article_id("https://example.com/a")
    assert len(article_id) == 32
    assert article_id == article_id.lower()
    assert is_valid_article_id(article_id)


def test_derive_article_id_hashes_link_verbatim():
    assert derive_article_id("https://Example.com/A") != derive_article_id("https://example.com/a")


@pytest.mark.parametrize("bad", ["", None, 42])
def test_derive_article_id_rejects_invalid_input(bad):
    with pytest.raises(ValidationError):
        derive_article_id(bad)


@pytest.mark.parametrize("bad", ["", "abc", "Z" * 32, "a" * 33, "a" * 32 + "\n", " " + "a" * 32, None])
def test_require_article_id_rejects_malformed_ids(bad):
    with pytest.raises(ValidationError) as excinfo:
        require_article_id(bad)
    assert excinfo.value.details == {"field": "articleId"}


def test_normalize_link_is_case_and_whitespace_insensitive():
    assert normalize_link("  HTTPS://X.test/Story ") == "https://x.test/story"
    assert normalize_link(None) == ""


def test_trailing_newline_is_not_a_valid_id():
    article_id = derive_article_id("https://example.com/a")
    assert not is_valid_article_id(article_id + "\n")
