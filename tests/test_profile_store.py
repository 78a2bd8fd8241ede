"""Tests for profile persistence."""

import json
from pathlib import Path

import pytest
from sm_mock import SUBSCRIPTION_ID

from smclient.environments import Environment
from smclient.models import ProfileData, Subscription
from smclient.profile_store import ProfileStore


def sample_profile() -> ProfileData:
    return ProfileData(
        default_environment_name="Dogfood",
        environments=[Environment(name="Dogfood", service_endpoint="https://m.dogfood/")],
        subscriptions=[
            Subscription(
                name="Prod",
                subscription_id=SUBSCRIPTION_ID,
                service_endpoint="https://m/",
                is_default=True,
                certificate_thumbprint="ab" * 20,
            )
        ],
    )


class TestProfileStoreSave:
    """Tests for saving profiles."""

    def test_round_trip(self, tmp_path: Path) -> None:
        """Test that a saved profile loads back equal, with the certificate as a thumbprint."""
        store = ProfileStore(tmp_path / "profile.json")
        data = sample_profile()

        store.save(data)
        loaded = store.load()

        assert loaded == data
        assert loaded.subscriptions[0].certificate_thumbprint == "AB" * 20

    def test_written_format(self, tmp_path: Path) -> None:
        """Test the persisted JSON field names."""
        store = ProfileStore(tmp_path / "profile.json")
        store.save(sample_profile())

        raw = json.loads((tmp_path / "profile.json").read_text())

        assert raw["defaultEnvironmentName"] == "Dogfood"
        assert raw["environments"][0]["serviceEndpoint"] == "https://m.dogfood/"
        sub = raw["subscriptions"][0]
        assert sub["subscriptionId"] == SUBSCRIPTION_ID
        assert sub["managementCertificate"] == "AB" * 20
        assert sub["isDefault"] is True
        assert sub["managementEndpoint"] == "https://m/"

    def test_creates_directory_and_leaves_no_temp_files(self, tmp_path: Path) -> None:
        """Test that saving creates the directory and cleans up."""
        store = ProfileStore(tmp_path / "nested" / "profile.json")

        store.save(ProfileData())

        assert [p.name for p in (tmp_path / "nested").iterdir()] == ["profile.json"]

    def test_failed_write_keeps_previous_file(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test that an error while replacing leaves the old profile intact."""
        store = ProfileStore(tmp_path / "profile.json")
        store.save(sample_profile())

        def fail_replace(src: str, dst: str) -> None:
            raise OSError("disk full")

        monkeypatch.setattr("smclient.profile_store.os.replace", fail_replace)

        with pytest.raises(OSError, match="disk full"):
            store.save(ProfileData())

        assert store.load() == sample_profile()
        assert [p.name for p in tmp_path.iterdir()] == ["profile.json"]


class TestProfileStoreLoad:
    """Tests for tolerant loading."""

    def test_missing_file(self, tmp_path: Path) -> None:
        """Test that a missing file loads as an empty profile."""
        assert ProfileStore(tmp_path / "profile.json").load() == ProfileData()

    @pytest.mark.parametrize("content", ["", "{not json", "[1, 2]", "null"])
    def test_unusable_file(self, tmp_path: Path, content: str) -> None:
        """Test that empty or malformed files load as an empty profile."""
        path = tmp_path / "profile.json"
        path.write_text(content)

        assert ProfileStore(path).load() == ProfileData()

    def test_bad_section_is_reset(self, tmp_path: Path) -> None:
        """Test that one invalid section does not discard the others."""
        path = tmp_path / "profile.json"
        path.write_text(
            json.dumps(
                {
                    "defaultEnvironmentName": "AzureChinaCloud",
                    "environments": [{"serviceEndpoint": "missing name"}],
                    "subscriptions": [{"name": "Prod", "subscriptionId": SUBSCRIPTION_ID}],
                }
            )
        )

        loaded = ProfileStore(path).load()

        assert loaded.default_environment_name == "AzureChinaCloud"
        assert loaded.environments == []
        assert [s.name for s in loaded.subscriptions] == ["Prod"]

    def test_bad_subscriptions_reset(self, tmp_path: Path) -> None:
        """Test that invalid subscriptions are reset while environments survive."""
        path = tmp_path / "profile.json"
        path.write_text(
            json.dumps(
                {
                    "environments": [{"name": "Dogfood"}],
                    "subscriptions": "not a list",
                }
            )
        )

        loaded = ProfileStore(path).load()

        assert [e.name for e in loaded.environments] == ["Dogfood"]
        assert loaded.subscriptions == []

    def test_bad_default_environment_name(self, tmp_path: Path) -> None:
        """Test that a non-string default environment falls back to the default."""
        path = tmp_path / "profile.json"
        path.write_text(json.dumps({"defaultEnvironmentName": 42}))

        assert ProfileStore(path).load().default_environment_name == "AzureCloud"

    def test_unknown_fields_ignored(self, tmp_path: Path) -> None:
        """Test that unknown fields are ignored."""
        path = tmp_path / "profile.json"
        path.write_text(
            json.dumps({"subscriptions": [{"name": "Prod", "subscriptionId": SUBSCRIPTION_ID, "colour": "blue"}]})
        )

        assert ProfileStore(path).load().subscriptions[0].name == "Prod"
