"""
Tests for Device Profiles
=========================

Loading, validating and saving profile JSON files.
"""

import base64
import json

import pytest

from sprd_nvtool.errors import ProfileError
from sprd_nvtool.nv import NVItemType, TypeMapping
from sprd_nvtool.profile import (
    DEFAULT_ERASE_REGIONS,
    DEFAULT_NV_BASE_ADDRESS,
    DEFAULT_NV_DATA_SIZE,
    FDL1_ADDRESS,
    FDL2_PACKET_SIZE,
    DeviceProfile,
    EraseRegion,
    FlashFileDefinition,
    StageImage,
    load_profile,
    profile_from_dict,
    profile_to_dict,
    save_profile,
)


def write_json(path, data):
    path.write_text(json.dumps(data), encoding="utf-8")
    return path


# =============================================================================
# DeviceProfile Tests
# =============================================================================

class TestDeviceProfile:
    """Tests for the DeviceProfile data structure."""

    def test_defaults(self):
        profile = DeviceProfile()

        assert profile.fdl1.address == 0x6200
        assert profile.fdl1.packet_size == 0x210
        assert profile.fdl2.address == 0x80100000
        assert profile.fdl2.packet_size == 0x2200
        assert profile.nv_base_address == 0x90000001
        assert profile.nv_data_size == 0x0B0BA8
        assert profile.erase_regions == DEFAULT_ERASE_REGIONS

    def test_require_stages(self):
        with pytest.raises(ProfileError, match="FDL1 or FDL2"):
            DeviceProfile().require_stages()

        with pytest.raises(ProfileError, match="no FDL2 image"):
            DeviceProfile().with_stages(fdl1_data=b"\x01").require_stages()

        DeviceProfile().with_stages(b"\x01", b"\x02").require_stages()

    def test_with_stages_keeps_addresses(self):
        profile = DeviceProfile().with_stages(b"\x01", b"\x02")
        assert profile.fdl1 == StageImage(b"\x01", FDL1_ADDRESS, 0x210)
        assert profile.fdl2.packet_size == FDL2_PACKET_SIZE

    def test_mappings_frozen(self):
        source = {"NV_0005": TypeMapping(NVItemType.IMEI, "IMEI1")}
        profile = DeviceProfile(nv_item_mappings=source)

        source["NV_0006"] = TypeMapping(NVItemType.STRING)

        assert "NV_0006" not in profile.nv_item_mappings
        with pytest.raises(TypeError):
            profile.nv_item_mappings["NV_0007"] = TypeMapping(NVItemType.STRING)

    @pytest.mark.parametrize("field_name", ["read_chunk_size", "nv_write_packet_size"])
    def test_packet_sizes_validated(self, field_name):
        with pytest.raises(ProfileError, match="between 1 and 65535"):
            DeviceProfile(**{field_name: 0x10000})
        with pytest.raises(ProfileError):
            DeviceProfile(**{field_name: 0})

    def test_nv_size_validated(self):
        with pytest.raises(ProfileError, match="NV data size"):
            DeviceProfile(nv_data_size=0)

    @pytest.mark.parametrize("kwargs, label", [
        ({"fdl1": StageImage(b"\x01", 0x1_0000_0000, 0x10)}, "FDL1 address"),
        ({"fdl2": StageImage(b"\x01", -1, 0x10)}, "FDL2 address"),
        ({"nv_base_address": 0x1_0000_0000}, "NV base address"),
        ({"nv_data_size": 0x1_0000_0000}, "NV data size"),
        ({"erase_regions": (EraseRegion("user", 0x1_0000_0000, 1),)}, "erase region 'user' address"),
        ({"erase_regions": (EraseRegion("user", 0, 0x1_0000_0000),)}, "erase region 'user' size"),
        ({"flash_files": (FlashFileDefinition("fixnv", 0x1_0000_0000, 1),)}, "flash file 'fixnv' address"),
        ({"flash_files": (FlashFileDefinition("fixnv", 0, -1),)}, "flash file 'fixnv' size"),
    ])
    def test_addresses_fit_in_32_bits(self, kwargs, label):
        with pytest.raises(ProfileError, match=f"{label} must fit in 32 bits"):
            DeviceProfile(**kwargs)

    def test_largest_address_accepted(self):
        profile = DeviceProfile(nv_base_address=0xFFFFFFFF)
        assert profile.nv_base_address == 0xFFFFFFFF

    def test_erase_region_lookup(self):
        profile = DeviceProfile()
        assert profile.erase_region("Runtime") == EraseRegion("runtime", 0x90000003, 0x4000)
        with pytest.raises(ProfileError, match="known: runtime, user"):
            profile.erase_region("calibration")

    def test_enabled_flash_files(self):
        profile = DeviceProfile(flash_files=[
            FlashFileDefinition("a", 0, 1),
            FlashFileDefinition("b", 0, 1, enabled=False),
        ])
        assert [f.name for f in profile.enabled_flash_files] == ["a"]

    def test_output_name_sanitized(self):
        assert FlashFileDefinition("fix/nv", 0, 1).output_name == "fix_nv.bin"
        assert FlashFileDefinition("x", 0, 1, file_name="a?b.bin").output_name == "a_b.bin"


# =============================================================================
# Loading Tests
# =============================================================================

class TestLoadProfile:
    """Tests for load_profile and profile_from_dict."""

    def test_embedded_loaders(self, tmp_path):
        path = write_json(tmp_path / "device.json", {
            "Name": "SC6531E",
            "Fdl1Data": base64.b64encode(b"stage one").decode(),
            "Fdl2Data": base64.b64encode(b"stage two").decode(),
        })

        profile = load_profile(path)

        assert profile.name == "SC6531E"
        assert profile.fdl1.data == b"stage one"
        assert profile.fdl2.data == b"stage two"
        assert profile.source_path == path

    def test_loader_paths_relative_to_profile(self, tmp_path):
        (tmp_path / "fdl1.bin").write_bytes(b"\x01\x02")
        (tmp_path / "fdl2.bin").write_bytes(b"\x03")
        path = write_json(tmp_path / "device.json", {
            "Fdl1Path": "fdl1.bin",
            "Fdl2Path": "fdl2.bin",
        })

        profile = load_profile(path)

        assert profile.fdl1.data == b"\x01\x02"
        assert profile.fdl2.data == b"\x03"

    def test_missing_loader_file_leaves_stage_empty(self, tmp_path):
        path = write_json(tmp_path / "device.json", {"Fdl1Path": "absent.bin"})
        assert not load_profile(path).fdl1.available

    def test_keys_case_insensitive(self, tmp_path):
        path = write_json(tmp_path / "device.json", {
            "nvbaseaddress": "0x90000000",
            "NVDATASIZE": 4096,
            "ReadChunkSize": "0x1000",
        })

        profile = load_profile(path)

        assert profile.nv_base_address == 0x90000000
        assert profile.nv_data_size == 4096
        assert profile.read_chunk_size == 0x1000

    def test_defaults_when_absent(self, tmp_path):
        profile = load_profile(write_json(tmp_path / "device.json", {}))
        assert profile.nv_base_address == DEFAULT_NV_BASE_ADDRESS
        assert profile.nv_data_size == DEFAULT_NV_DATA_SIZE
        assert profile.erase_regions == DEFAULT_ERASE_REGIONS

    def test_nv_item_mappings(self):
        profile = profile_from_dict({
            "NVItemMappings": {
                "nv_0005": {"Id": 5, "Name": "IMEI1", "Type": "IMEI"},
                "NV_0010": {"name": "Band", "type": 3},
            },
        })

        assert profile.nv_item_mappings["NV_0005"] == TypeMapping(NVItemType.IMEI, "IMEI1")
        assert profile.nv_item_mappings["NV_0010"].type is NVItemType.UINT16

    def test_unknown_item_type(self):
        with pytest.raises(ProfileError, match="unknown NV item type"):
            profile_from_dict({"NVItemMappings": {"NV_0001": {"Type": "Float"}}})

    def test_flash_files_and_erase_regions(self):
        profile = profile_from_dict({
            "FlashFiles": [
                {"Name": "fixnv", "BaseAddress": "0x90000000", "Size": 65536, "Enabled": False},
            ],
            "EraseRegions": [{"Name": "runtime", "Address": 1, "Size": 2}],
        })

        assert profile.flash_files == (FlashFileDefinition("fixnv", 0x90000000, 65536, enabled=False),)
        assert profile.erase_regions == (EraseRegion("runtime", 1, 2),)

    @pytest.mark.parametrize("raw, message", [
        ({"NVBaseAddress": "ninety"}, "expected a number"),
        ({"NVDataSize": True}, "expected a number"),
        ({"Fdl1Data": "not base64!"}, "not valid base64"),
        ({"FlashFiles": {}}, "must be a list"),
        ({"NVItemMappings": []}, "must be an object"),
        ({"ReadChunkSize": 0x20000}, "between 1 and"),
        ({"Fdl1Address": "0x1FFFFFFFF"}, "FDL1 address must fit in 32 bits"),
        ({"FlashFiles": [{"Name": "x", "BaseAddress": "0x100000000", "Size": 1}]},
         "flash file 'x' address"),
    ])
    def test_invalid_values(self, raw, message):
        with pytest.raises(ProfileError, match=message):
            profile_from_dict(raw)

    def test_not_an_object(self):
        with pytest.raises(ProfileError, match="JSON object"):
            profile_from_dict([1, 2, 3])

    def test_missing_file(self, tmp_path):
        with pytest.raises(ProfileError, match="Cannot read profile"):
            load_profile(tmp_path / "absent.json")

    def test_invalid_json(self, tmp_path):
        path = tmp_path / "device.json"
        path.write_text("{not json", encoding="utf-8")
        with pytest.raises(ProfileError, match="Invalid JSON"):
            load_profile(path)

    def test_utf8_bom_accepted(self, tmp_path):
        path = tmp_path / "device.json"
        path.write_bytes(b"\xef\xbb\xbf" + json.dumps({"Name": "BOM"}).encode())
        assert load_profile(path).name == "BOM"


# =============================================================================
# Saving Tests
# =============================================================================

class TestSaveProfile:
    """Tests for profile_to_dict and save_profile."""

    def test_roundtrip(self, tmp_path):
        profile = DeviceProfile(
            name="Test",
            fdl1=StageImage(b"\x01" * 8, 0x6200, 0x100),
            fdl2=StageImage(b"\x02" * 8, 0x80100000, 0x200),
            nv_base_address=0x90000001,
            nv_data_size=0x1000,
            nv_item_mappings={"NV_0005": TypeMapping(NVItemType.IMEI, "IMEI1", "First IMEI")},
            flash_files=(FlashFileDefinition("fixnv", 0x90000000, 0x100, "fix.bin"),),
        )
        path = tmp_path / "saved.json"

        save_profile(profile, path)
        loaded = load_profile(path)

        assert loaded == profile
        assert loaded.source_path == path

    def test_dict_keys(self):
        data = profile_to_dict(DeviceProfile())
        assert data["Fdl1Data"] is None
        assert data["NVBaseAddress"] == DEFAULT_NV_BASE_ADDRESS
        assert [r["Name"] for r in data["EraseRegions"]] == ["runtime", "user"]
