"""Tests for senselink.pairing -- the persisted pairing store."""

import json
from unittest.mock import patch

from senselink.pairing import Pairing, PairingStore, default_store_path


def make_pairing(pairing_id="pair_0001", token_hash="h1", user="@anna:example.org",
                 device="ios-1", agent="@kathy:example.org"):
    return Pairing(
        pairing_id=pairing_id,
        token_hash=token_hash,
        agent_id=agent,
        user_id=user,
        device_id=device,
        device_name="Phone",
        created_at=100,
        last_seen_at=100,
    )


# =====================================================================
# PairingStore persistence
# =====================================================================
class TestPairingStorePersistence:
    def test_missing_file_is_empty(self, tmp_path):
        store = PairingStore(str(tmp_path / "pairings.json"))
        assert len(store) == 0

    def test_add_persists_and_reloads(self, tmp_path):
        path = str(tmp_path / "pairings.json")
        store = PairingStore(path)
        store.add(make_pairing())

        reloaded = PairingStore(path)
        assert len(reloaded) == 1
        assert reloaded.get("pair_0001").device_name == "Phone"
        assert reloaded.find_by_hash("h1").pairing_id == "pair_0001"

    def test_file_layout_keyed_by_pairing_id(self, tmp_path):
        path = tmp_path / "pairings.json"
        PairingStore(str(path)).add(make_pairing())
        data = json.loads(path.read_text())
        assert list(data["pairings"]) == ["pair_0001"]
        assert data["pairings"]["pair_0001"]["token_hash"] == "h1"

    def test_corrupt_file_loads_empty(self, tmp_path):
        path = tmp_path / "pairings.json"
        path.write_text("{not valid json")
        store = PairingStore(str(path))
        assert len(store) == 0

    def test_wrong_shape_loads_empty(self, tmp_path):
        path = tmp_path / "pairings.json"
        path.write_text(json.dumps({"pairings": ["oops"]}))
        assert len(PairingStore(str(path))) == 0

    def test_malformed_record_skipped(self, tmp_path):
        path = tmp_path / "pairings.json"
        good = make_pairing().to_dict()
        path.write_text(json.dumps({"pairings": {"pair_0001": good, "pair_bad": {"agent_id": "x"}}}))
        store = PairingStore(str(path))
        assert len(store) == 1
        assert store.get("pair_bad") is None

    def test_save_failure_keeps_memory_state(self, tmp_path):
        store = PairingStore(str(tmp_path / "pairings.json"))
        with patch("senselink.pairing.write_json", side_effect=OSError("disk full")):
            store.add(make_pairing())
            assert store.save() is False
        assert store.get("pair_0001") is not None

    def test_default_store_path(self, tmp_path):
        assert default_store_path(str(tmp_path)).endswith("pairings.json")


# =====================================================================
# PairingStore lookups
# =====================================================================
class TestPairingStoreLookups:
    def test_find_by_key(self, tmp_path):
        store = PairingStore(str(tmp_path / "p.json"))
        store.add(make_pairing())
        assert store.find_by_key("@anna:example.org", "ios-1", "@kathy:example.org").pairing_id == "pair_0001"
        assert store.find_by_key("@anna:example.org", "ios-2", "@kathy:example.org") is None

    def test_remove(self, tmp_path):
        store = PairingStore(str(tmp_path / "p.json"))
        store.add(make_pairing())
        removed = store.remove("pair_0001")
        assert removed.pairing_id == "pair_0001"
        assert store.find_by_hash("h1") is None
        assert store.remove("pair_0001") is None

    def test_hash_identifies_one_pairing(self, tmp_path):
        store = PairingStore(str(tmp_path / "p.json"))
        store.add(make_pairing("pair_a", "same"))
        store.add(make_pairing("pair_b", "same", device="ios-2"))
        assert len(store) == 1
        assert store.find_by_hash("same").pairing_id == "pair_b"

    def test_list_filters_by_agent(self, tmp_path):
        store = PairingStore(str(tmp_path / "p.json"))
        store.add(make_pairing("pair_a", "h1"))
        store.add(make_pairing("pair_b", "h2", agent="@other:example.org"))
        assert [p.pairing_id for p in store.list("@other:example.org")] == ["pair_b"]
        assert len(store.list()) == 2

    def test_public_dict_hides_hash(self):
        assert "token_hash" not in make_pairing().public_dict()
