"""
Tests for DescriptorStore - descriptor file and completion marker.
"""

from datetime import datetime

import pytest
from unittest.mock import patch

from fastluks_mcp.descriptor_store import (
    SUCCESS_MESSAGE,
    DescriptorStore,
    VolumeDescriptor,
)


@pytest.fixture
def descriptor():
    """Descriptor of a completed run."""
    return VolumeDescriptor(
        cipher_algorithm="aes-xts-plain64",
        hash_algorithm="sha256",
        keysize=256,
        device="/dev/vdb",
        uuid="0b6a2e4c-7f1d-4b8e-9a3c-2d5e6f708192",
        cryptdev="qwertyui",
        mapper="/dev/mapper/qwertyui",
        mountpoint="/export",
        filesystem="ext4",
    )


@pytest.fixture
def store(tmp_path):
    """DescriptorStore writing under tmp_path."""
    return DescriptorStore(
        tmp_path / "etc" / "luks" / "luks-cryptdev.ini",
        tmp_path / "run" / "fast-luks-encryption.success",
    )


@pytest.fixture(autouse=True)
def no_forensic_dumps():
    """Keep dmsetup/cryptsetup out of the tests."""
    with patch("fastluks_mcp.device_utils.dmsetup_info", return_value="") as info, patch(
        "fastluks_mcp.device_utils.luks_dump", return_value=""
    ) as dump:
        yield info, dump


class TestVolumeDescriptor:
    """Test descriptor serialization."""

    def test_to_ini_layout(self, descriptor):
        """Test the document has a [luks] section with keys in order."""
        text = descriptor.to_ini(generated_at=datetime(2024, 3, 5, 14, 30, 0))

        assert text.startswith("# ")
        assert "# luks-Mar-05-24-143000" in text
        assert "# LUKS header information for /dev/vdb" in text

        section = text[text.index("[luks]"):]
        keys = [line.split(" = ")[0] for line in section.splitlines()[1:] if " = " in line]
        assert keys == [
            "cipher_algorithm",
            "hash_algorithm",
            "keysize",
            "device",
            "uuid",
            "cryptdev",
            "mapper",
            "mountpoint",
            "filesystem",
        ]
        assert "mapper = /dev/mapper/qwertyui" in section

    def test_from_ini_roundtrip_values(self, descriptor):
        """Test parsing recovers typed values."""
        parsed = VolumeDescriptor.from_ini(descriptor.to_ini())

        assert parsed == descriptor
        assert isinstance(parsed.keysize, int)

    def test_from_ini_missing_section(self):
        """Test a document without [luks] is rejected."""
        with pytest.raises(ValueError, match="no \\[luks\\] section"):
            VolumeDescriptor.from_ini("[other]\nkey = value\n")

    def test_from_ini_missing_field(self, descriptor):
        """Test a document missing a field is rejected."""
        text = descriptor.to_ini().replace("uuid = ", "uuid_old = ")

        with pytest.raises(ValueError, match="missing: uuid"):
            VolumeDescriptor.from_ini(text)

    def test_from_ini_bad_keysize(self, descriptor):
        """Test a non-numeric keysize is rejected."""
        text = descriptor.to_ini().replace("keysize = 256", "keysize = big")

        with pytest.raises(ValueError, match="keysize"):
            VolumeDescriptor.from_ini(text)


class TestDescriptorStore:
    """Test writing and reading the descriptor file."""

    def test_record_and_load(self, store, descriptor):
        """Test a recorded descriptor can be loaded back."""
        store.record(descriptor)

        assert store.descriptor_file.exists()
        assert store.load() == descriptor

    def test_record_overwrites_previous_document(self, store, descriptor):
        """Test recording replaces, not merges, an existing document."""
        store.descriptor_file.parent.mkdir(parents=True)
        store.descriptor_file.write_text("[luks]\nstale_key = 1\n\n[extra]\nfoo = bar\n")

        store.record(descriptor)

        text = store.descriptor_file.read_text()
        assert "stale_key" not in text
        assert "[extra]" not in text
        assert "device = /dev/vdb" in text

    def test_record_leaves_no_temp_file(self, store, descriptor):
        """Test the temporary file is renamed into place."""
        store.record(descriptor)

        leftovers = [p.name for p in store.descriptor_file.parent.iterdir()]
        assert leftovers == ["luks-cryptdev.ini"]

    def test_record_logs_forensic_dumps(self, store, descriptor, no_forensic_dumps):
        """Test mapping and header dumps are captured, not stored in the file."""
        info, dump = no_forensic_dumps
        info.return_value = "Name: qwertyui"

        store.record(descriptor)

        info.assert_called_once_with("/dev/mapper/qwertyui")
        dump.assert_called_once_with("/dev/vdb")
        assert "Name: qwertyui" not in store.descriptor_file.read_text()

    def test_load_missing_returns_none(self, store):
        """Test loading before any run returns None."""
        assert store.load() is None


class TestCompletionMarker:
    """Test the completion marker contract."""

    def test_mark_complete_writes_exact_text(self, store):
        """Test the marker content is byte-identical to the contract."""
        store.mark_complete()

        assert store.success_file.read_bytes() == b"LUKS encryption completed.\n"
        assert SUCCESS_MESSAGE == "LUKS encryption completed.\n"

    def test_is_complete(self, store):
        """Test is_complete reflects the marker."""
        assert not store.is_complete()

        store.mark_complete()
        assert store.is_complete()

    def test_clear_complete(self, store):
        """Test clearing removes the marker and tolerates its absence."""
        store.mark_complete()

        store.clear_complete()
        assert not store.success_file.exists()

        store.clear_complete()
        assert not store.is_complete()

    def test_is_complete_rejects_other_content(self, store):
        """Test a marker with different content does not count."""
        store.success_file.parent.mkdir(parents=True)
        store.success_file.write_text("done\n")

        assert not store.is_complete()
