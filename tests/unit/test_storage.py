from __future__ import annotations

from urllib.parse import parse_qs, unquote, urlparse

import pytest

from smartmeet_pipeline.common.errors import StorageError
from smartmeet_pipeline.domain.enums import NotificationKind
from smartmeet_pipeline.services.notifications import NotificationMessage, SqlNotificationSink, job_link
from smartmeet_pipeline.storage.blob import LocalBlobStorage
from smartmeet_pipeline.storage.cache import ViewCache, owner_key


def _blob(tmp_path, clock) -> LocalBlobStorage:
    return LocalBlobStorage(tmp_path, signing_secret="s3cret", url_ttl_sec=60, clock=clock)


def test_put_download_delete(tmp_path, clock) -> None:
    blob = _blob(tmp_path, clock)
    blob.put("o1/j1/a.txt", b"data")
    assert blob.exists("o1/j1/a.txt")
    assert blob.download("o1/j1/a.txt") == b"data"
    blob.delete("o1/j1/a.txt")
    with pytest.raises(StorageError):
        blob.download("o1/j1/a.txt")


def test_path_traversal_rejected(tmp_path, clock) -> None:
    with pytest.raises(StorageError):
        _blob(tmp_path, clock).download("../etc/passwd")


def test_signed_url_roundtrip_and_expiry(tmp_path, clock) -> None:
    blob = _blob(tmp_path, clock)
    url = urlparse(blob.signed_url("o1/j1/meeting notes.txt"))
    key = unquote(url.path.removeprefix("/v1/artifacts/"))
    q = parse_qs(url.query)
    expires, sig = int(q["expires"][0]), q["sig"][0]

    assert key == "o1/j1/meeting notes.txt"
    assert blob.verify_signed_url(key, expires=expires, sig=sig) is True
    assert blob.verify_signed_url("o1/j1/other.txt", expires=expires, sig=sig) is False
    assert blob.verify_signed_url(key, expires=expires + 1, sig=sig) is False

    clock.advance(sec=61)
    assert blob.verify_signed_url(key, expires=expires, sig=sig) is False


def test_view_cache_invalidates_owner_keys_only(fake_redis) -> None:
    cache = ViewCache(fake_redis, ttl_sec=60)
    cache.set_json(owner_key("o1", "dashboard"), {"n": 1})
    cache.set_json(owner_key("o1", "job:j1:status"), {"n": 2})
    cache.set_json(owner_key("o2", "dashboard"), {"n": 3})

    assert cache.invalidate_owner("o1") == 2
    assert cache.get_json(owner_key("o1", "dashboard")) is None
    assert cache.get_json(owner_key("o2", "dashboard")) == {"n": 3}


def test_view_cache_swallows_redis_errors(fake_redis) -> None:
    cache = ViewCache(fake_redis)
    fake_redis.down = True
    cache.set_json("user:o1:x", {"a": 1})
    assert cache.get_json("user:o1:x") is None
    assert cache.invalidate_owner("o1") == 0


def test_notifications_are_listed_newest_first(session_factory) -> None:
    sink = SqlNotificationSink(session_factory)
    sink.notify("o1", NotificationMessage("First", "m1", NotificationKind.INFO))
    sink.notify("o1", NotificationMessage("Second", "m2", NotificationKind.SUCCESS, job_link("j1")))

    items = sink.list_for_owner("o1")
    assert [n.title for n in items] == ["Second", "First"]
    assert items[0].link == "/dashboard/recordings/j1"
