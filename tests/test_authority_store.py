import asyncio
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from authority_overlap import TrackSegment
from authority_store import AuthorityStore
from track_errors import AccessDeniedError, NotFoundError, ValidationError


def _payload(begin, end, **extra):
    payload = {
        "subdivision_id": "VENTURA",
        "track_type": "Main",
        "track_number": "1",
        "begin_mp": begin,
        "end_mp": end,
    }
    payload.update(extra)
    return payload


def test_creation_reports_overlap_with_active_authority(tmp_path):
    async def scenario():
        store = AuthorityStore(tmp_path / "authorities.json")
        first, overlaps = await store.create_authority("u1", "A1", _payload(10, 20))
        assert overlaps == []
        second, overlaps = await store.create_authority("u2", "A1", _payload(9, 15))
        return first, second, overlaps, store

    first, second, overlaps, store = asyncio.run(scenario())
    assert len(overlaps) == 1
    record = overlaps[0]
    assert record.authority1_id == second.authority_id
    assert record.authority2_id == first.authority_id
    assert (record.overlap_begin_mp, record.overlap_end_mp) == (10, 15)
    assert record.user2_id == "u1"

    listed = asyncio.run(store.list_overlaps())
    assert [o.overlap_id for o in listed] == [record.overlap_id]


def test_touching_authorities_do_not_overlap(tmp_path):
    async def scenario():
        store = AuthorityStore(tmp_path / "authorities.json")
        await store.create_authority("u1", "A1", _payload(0, 10))
        _, overlaps = await store.create_authority("u2", "A1", _payload(10, 20))
        return overlaps

    assert asyncio.run(scenario()) == []


def test_concurrent_creation_detects_each_other(tmp_path):
    async def scenario():
        store = AuthorityStore(tmp_path / "authorities.json")
        results = await asyncio.gather(
            store.create_authority("u1", "A1", _payload(10, 20)),
            store.create_authority("u2", "A1", _payload(15, 25)),
        )
        return results

    results = asyncio.run(scenario())
    total = sum(len(overlaps) for _, overlaps in results)
    assert total == 1


def test_invalid_range_is_rejected(tmp_path):
    store = AuthorityStore(tmp_path / "authorities.json")
    with pytest.raises(ValidationError):
        asyncio.run(store.create_authority("u1", "A1", _payload(20, 10)))
    with pytest.raises(ValidationError):
        asyncio.run(store.create_authority("u1", "A1", _payload(5, 5)))
    with pytest.raises(ValidationError):
        asyncio.run(store.create_authority("u1", "A1", _payload("x", 10)))


def test_end_authority_rules(tmp_path):
    async def scenario():
        store = AuthorityStore(tmp_path / "authorities.json")
        auth, _ = await store.create_authority("u1", "A1", _payload(0, 5))
        with pytest.raises(AccessDeniedError):
            await store.end_authority(auth.authority_id, "u2")
        ended = await store.end_authority(auth.authority_id, "u1", confirm_end_tracking=True)
        assert not ended.is_active
        assert ended.end_confirmed is True
        assert ended.ended_at is not None
        with pytest.raises(ValidationError):
            await store.end_authority(auth.authority_id, "u1")
        with pytest.raises(NotFoundError):
            await store.end_authority("missing", "u1")
        return await store.get_active_authorities()

    assert asyncio.run(scenario()) == []


def test_ended_authority_no_longer_overlaps(tmp_path):
    async def scenario():
        store = AuthorityStore(tmp_path / "authorities.json")
        auth, _ = await store.create_authority("u1", "A1", _payload(0, 10))
        await store.end_authority(auth.authority_id, "admin", is_admin=True)
        return await store.check_overlap(TrackSegment("VENTURA", "Main", "1", 2, 8))

    assert asyncio.run(scenario()) == []


def test_expire_authorities(tmp_path):
    start = datetime.now(timezone.utc)

    async def scenario():
        store = AuthorityStore(tmp_path / "authorities.json")
        auth, _ = await store.create_authority(
            "u1",
            "A1",
            _payload(0, 10, expiration_time=(start + timedelta(minutes=30)).isoformat()),
        )
        assert await store.expire_authorities(start + timedelta(minutes=10)) == []
        expired = await store.expire_authorities(start + timedelta(minutes=31))
        return auth, expired

    auth, expired = asyncio.run(scenario())
    assert [a.authority_id for a in expired] == [auth.authority_id]
    assert expired[0].end_reason == "expired"


def test_store_persists_across_reload(tmp_path):
    path = tmp_path / "authorities.json"

    async def scenario():
        store = AuthorityStore(path)
        await store.create_authority("u1", "A1", _payload(10, 20, authority_id="auth-1"))
        _, overlaps = await store.create_authority("u2", "A1", _payload(9, 15, authority_id="auth-2"))
        await store.resolve_overlap(overlaps[0].overlap_id, "crews coordinated")

    asyncio.run(scenario())

    reloaded = AuthorityStore(path)
    auth = asyncio.run(reloaded.get_authority("auth-1"))
    assert (auth.begin_mp, auth.end_mp) == (10.0, 20.0)
    assert asyncio.run(reloaded.list_overlaps()) == []
    resolved = asyncio.run(reloaded.list_overlaps(include_resolved=True))
    assert resolved[0].resolved is True
    assert resolved[0].notes == "crews coordinated"


def test_active_authorities_filter_by_track(tmp_path):
    async def scenario():
        store = AuthorityStore(tmp_path / "authorities.json")
        await store.create_authority("u1", "A1", _payload(0, 10))
        await store.create_authority("u2", "A1", _payload(0, 10, track_number="2"))
        return (
            await store.get_active_authorities("VENTURA", "Main", "2"),
            await store.get_active_authorities("VENTURA"),
        )

    track_two, everything = asyncio.run(scenario())
    assert [a.user_id for a in track_two] == ["u2"]
    assert len(everything) == 2
