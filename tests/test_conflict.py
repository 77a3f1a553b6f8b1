"""
Unit tests for last-write-wins resolution
"""

from thermalsync.storage.models import LogicalTimestamp
from thermalsync.sync.conflict import Resolution, is_tie, resolve, writes_remote
from tests.conftest import make_entry


def ts(wall_ms, counter=0, device_id=""):
    return LogicalTimestamp(wallMs=wall_ms, counter=counter, deviceId=device_id)


class TestResolve:
    """Test every branch of the resolution function."""

    def test_no_remote_creates(self):
        assert resolve(ts(1), "aa", None, None) == Resolution.CREATE

    def test_local_newer_overwrites(self):
        assert resolve(ts(2), "aa", ts(1), "bb") == Resolution.OVERWRITE

    def test_counter_breaks_equal_wall_time(self):
        assert resolve(ts(5, 1), "aa", ts(5, 0), "bb") == Resolution.OVERWRITE
        assert resolve(ts(5, 0), "aa", ts(5, 1), "bb") == Resolution.STALE

    def test_remote_newer_is_stale(self):
        assert resolve(ts(1), "aa", ts(2), "bb") == Resolution.STALE

    def test_same_version_same_content(self):
        assert resolve(ts(3), "aa", ts(3), "aa") == Resolution.ALREADY_APPLIED

    def test_tie_greater_hash_wins(self):
        assert resolve(ts(3), "bb", ts(3), "aa") == Resolution.TIE_LOCAL_WINS
        assert resolve(ts(3), "aa", ts(3), "bb") == Resolution.TIE_REMOTE_WINS

    def test_helpers(self):
        assert writes_remote(Resolution.CREATE)
        assert writes_remote(Resolution.TIE_LOCAL_WINS)
        assert not writes_remote(Resolution.ALREADY_APPLIED)
        assert not writes_remote(Resolution.STALE)
        assert is_tie(Resolution.TIE_REMOTE_WINS)
        assert not is_tie(Resolution.OVERWRITE)


class TestConflictDeterminism:
    """Two replicas evaluating the same pair pick the same payload."""

    def test_same_winner_from_either_side(self):
        a = make_entry("05", {"exhaustTemp": 900.0}, device_id="dev-a")
        b = make_entry("05", {"exhaustTemp": 905.0}, device_id="dev-b")
        ha, hb = a.content_hash(), b.content_hash()

        on_a = resolve(a.updated_at, ha, b.updated_at, hb)
        on_b = resolve(b.updated_at, hb, a.updated_at, ha)

        winner_on_a = a if on_a == Resolution.TIE_LOCAL_WINS else b
        winner_on_b = b if on_b == Resolution.TIE_LOCAL_WINS else a
        assert winner_on_a is winner_on_b
        assert {on_a, on_b} == {Resolution.TIE_LOCAL_WINS, Resolution.TIE_REMOTE_WINS}
