"""
Device Profiles
===============

A device profile describes one handset model: the two stage loaders
(FDL1 / FDL2) and where they are loaded, where the NV blob lives in
flash, how to present known NV ids, and which other flash regions are
worth dumping.

A DeviceProfile is immutable. A BootSession keeps the profile it was
created with for its whole lifetime, so editing or reloading a profile
file never affects a session that is already running.

Profile File Format
-------------------
Profiles are JSON files. Property names are matched without regard to
case:

    {
      "Name": "SC6531E feature phone",
      "Fdl1Path": "fdl1.bin",
      "Fdl2Path": "fdl2.bin",
      "NVBaseAddress": 2415919105,
      "NVDataSize": 723880,
      "ReadChunkSize": 12288,
      "NVItemMappings": {
        "NV_0005": {"Id": 5, "Name": "IMEI1", "Type": "IMEI"}
      },
      "FlashFiles": [
        {"Name": "fixnv", "BaseAddress": 2415919104, "Size": 65536,
         "FileName": "fixnv.bin", "Enabled": true}
      ]
    }

Stage loaders may be embedded as base64 ("Fdl1Data" / "Fdl2Data");
otherwise "Fdl1Path" / "Fdl2Path" are read, relative to the profile
file. Numbers may also be given as "0x..." strings.

Defaults
--------
Values not present in the file take the defaults of the common
SC6531-class boot ROM: FDL1 at 0x6200 in 0x210-byte packets, FDL2 at
0x80100000 in 0x2200-byte packets, NV at 0x90000001 (0xB0BA8 bytes).
"""

import base64
import binascii
import json
import logging
import re
from dataclasses import dataclass, field, replace
from pathlib import Path
from types import MappingProxyType
from typing import Any, Final, Mapping, Optional, Union

from sprd_nvtool.errors import ProfileError
from sprd_nvtool.nv.items import NVItemType, TypeMapping

# Configure module logger
logger = logging.getLogger(__name__)


# =============================================================================
# Constants
# =============================================================================

FDL1_ADDRESS: Final[int] = 0x6200
FDL1_PACKET_SIZE: Final[int] = 0x210
FDL2_ADDRESS: Final[int] = 0x80100000
FDL2_PACKET_SIZE: Final[int] = 0x2200

DEFAULT_NV_BASE_ADDRESS: Final[int] = 0x90000001
DEFAULT_NV_DATA_SIZE: Final[int] = 0x0B0BA8
DEFAULT_READ_CHUNK_SIZE: Final[int] = 0x3000
DEFAULT_NV_WRITE_PACKET_SIZE: Final[int] = 0xB000

# Upper bound of any per-packet size (16-bit LEN field)
MAX_PACKET_SIZE: Final[int] = 0xFFFF

# Addresses and sizes travel as BE32 fields
MAX_ADDRESS: Final[int] = 0xFFFFFFFF

_SAFE_FILENAME_RE = re.compile(r'[<>:"/\\|?*\x00-\x1f]')


# =============================================================================
# Profile Data Structures
# =============================================================================

@dataclass(frozen=True)
class StageImage:
    """
    One stage loader and where it is loaded.

    Attributes:
        data: Loader image (empty if not available)
        address: Load address
        packet_size: Maximum MIDST payload while uploading
    """
    data: bytes = field(default=b"", repr=False)
    address: int = 0
    packet_size: int = 0

    @property
    def available(self) -> bool:
        """Return True if the loader image is present."""
        return bool(self.data)


@dataclass(frozen=True)
class FlashFileDefinition:
    """
    A flash region to dump alongside the NV blob.

    Attributes:
        name: Short name
        base_address: Start address in flash
        size: Region size in bytes
        file_name: Output file name (default "<name>.bin")
        description: Free text
        enabled: Include in dumps
    """
    name: str
    base_address: int
    size: int
    file_name: str = ""
    description: str = ""
    enabled: bool = True

    @property
    def output_name(self) -> str:
        """File name safe to create in any output directory."""
        name = self.file_name.strip() or f"{self.name}.bin"
        return _SAFE_FILENAME_RE.sub("_", name)


@dataclass(frozen=True)
class EraseRegion:
    """A named flash region that may be erased after an NV write."""
    name: str
    address: int
    size: int


# Regions the stage-2 loader keeps derived NV state in
DEFAULT_ERASE_REGIONS: Final[tuple[EraseRegion, ...]] = (
    EraseRegion("runtime", 0x90000003, 0x4000),
    EraseRegion("user", 0x9000001A, 0x4000),
)


@dataclass(frozen=True)
class DeviceProfile:
    """
    Read-only snapshot of everything a session needs to know about a device.

    Attributes:
        name: Profile name
        description: Free text
        fdl1: First stage loader
        fdl2: Second stage loader
        nv_base_address: Flash address of the NV blob
        nv_data_size: Size of the NV blob in bytes
        read_chunk_size: Bytes requested per READ_FLASH command
        nv_write_packet_size: MIDST payload size when writing NV
        nv_item_mappings: Type mappings keyed "NV_XXXX"
        flash_files: Extra regions to dump
        erase_regions: Regions that may be erased after an NV write
        source_path: File the profile was loaded from
    """
    name: str = "Default"
    description: str = ""
    fdl1: StageImage = field(
        default_factory=lambda: StageImage(address=FDL1_ADDRESS, packet_size=FDL1_PACKET_SIZE)
    )
    fdl2: StageImage = field(
        default_factory=lambda: StageImage(address=FDL2_ADDRESS, packet_size=FDL2_PACKET_SIZE)
    )
    nv_base_address: int = DEFAULT_NV_BASE_ADDRESS
    nv_data_size: int = DEFAULT_NV_DATA_SIZE
    read_chunk_size: int = DEFAULT_READ_CHUNK_SIZE
    nv_write_packet_size: int = DEFAULT_NV_WRITE_PACKET_SIZE
    nv_item_mappings: Mapping[str, TypeMapping] = field(default_factory=dict)
    flash_files: tuple[FlashFileDefinition, ...] = ()
    erase_regions: tuple[EraseRegion, ...] = DEFAULT_ERASE_REGIONS
    source_path: Optional[Path] = field(default=None, compare=False)

    def __post_init__(self) -> None:
        # Freeze the containers so the snapshot cannot change under a session
        object.__setattr__(
            self, "nv_item_mappings", MappingProxyType(dict(self.nv_item_mappings))
        )
        object.__setattr__(self, "flash_files", tuple(self.flash_files))
        object.__setattr__(self, "erase_regions", tuple(self.erase_regions))

        for label, value in (
            ("FDL1 packet size", self.fdl1.packet_size),
            ("FDL2 packet size", self.fdl2.packet_size),
            ("read chunk size", self.read_chunk_size),
            ("NV write packet size", self.nv_write_packet_size),
        ):
            if not 0 < value <= MAX_PACKET_SIZE:
                raise ProfileError(
                    f"{label} must be between 1 and {MAX_PACKET_SIZE}, got {value}"
                )

        if self.nv_data_size <= 0:
            raise ProfileError(f"NV data size must be positive, got {self.nv_data_size}")

        fields = [
            ("FDL1 address", self.fdl1.address),
            ("FDL2 address", self.fdl2.address),
            ("NV base address", self.nv_base_address),
            ("NV data size", self.nv_data_size),
        ]
        for region in self.erase_regions:
            fields.append((f"erase region '{region.name}' address", region.address))
            fields.append((f"erase region '{region.name}' size", region.size))
        for flash_file in self.flash_files:
            fields.append((f"flash file '{flash_file.name}' address", flash_file.base_address))
            fields.append((f"flash file '{flash_file.name}' size", flash_file.size))

        for label, value in fields:
            if not 0 <= value <= MAX_ADDRESS:
                raise ProfileError(
                    f"{label} must fit in 32 bits (0 to {MAX_ADDRESS:#x}), got {value:#x}"
                )

    def with_stages(
        self,
        fdl1_data: Optional[bytes] = None,
        fdl2_data: Optional[bytes] = None,
    ) -> "DeviceProfile":
        """Return a copy with the given loader images substituted."""
        fdl1 = replace(self.fdl1, data=bytes(fdl1_data)) if fdl1_data is not None else self.fdl1
        fdl2 = replace(self.fdl2, data=bytes(fdl2_data)) if fdl2_data is not None else self.fdl2
        return replace(self, fdl1=fdl1, fdl2=fdl2)

    def require_stages(self) -> None:
        """
        Check that both stage loaders are present.

        Raises:
            ProfileError: If either loader image is missing.
        """
        missing = [
            label for label, stage in (("FDL1", self.fdl1), ("FDL2", self.fdl2))
            if not stage.available
        ]
        if missing:
            raise ProfileError(
                f"Profile '{self.name}' has no {' or '.join(missing)} image"
            )

    def erase_region(self, name: str) -> EraseRegion:
        """
        Look up an erase region by name.

        Raises:
            ProfileError: If the profile defines no such region.
        """
        for region in self.erase_regions:
            if region.name.lower() == name.lower():
                return region
        known = ", ".join(r.name for r in self.erase_regions) or "none"
        raise ProfileError(f"Unknown erase region '{name}' (known: {known})")

    @property
    def enabled_flash_files(self) -> tuple[FlashFileDefinition, ...]:
        return tuple(f for f in self.flash_files if f.enabled)


# =============================================================================
# JSON Loading
# =============================================================================

def _fold(raw: Mapping[str, Any]) -> dict[str, Any]:
    """Lower-case the keys of a JSON object."""
    return {str(key).lower(): value for key, value in raw.items()}


def _int_value(value: Any, label: str) -> int:
    if isinstance(value, bool):
        raise ProfileError(f"{label}: expected a number, got {value!r}")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value.strip(), 0)
        except ValueError:
            pass
    raise ProfileError(f"{label}: expected a number, got {value!r}")


def _get_int(fields: dict[str, Any], key: str, default: int) -> int:
    value = fields.get(key.lower())
    if value is None:
        return default
    return _int_value(value, key)


def _item_type(value: Any, label: str) -> NVItemType:
    if isinstance(value, int) and not isinstance(value, bool):
        members = list(NVItemType)
        if 0 <= value < len(members):
            return members[value]
    elif isinstance(value, str):
        try:
            return NVItemType.from_name(value)
        except ValueError:
            pass
    raise ProfileError(f"{label}: unknown NV item type {value!r}")


def _stage(
    fields: dict[str, Any],
    prefix: str,
    address: int,
    packet_size: int,
    base_dir: Optional[Path],
) -> StageImage:
    data = b""
    embedded = fields.get(f"{prefix}data")
    if embedded:
        try:
            data = base64.b64decode(embedded, validate=True)
        except (binascii.Error, TypeError, ValueError) as e:
            raise ProfileError(f"{prefix.upper()}Data is not valid base64: {e}") from e
    else:
        path_value = fields.get(f"{prefix}path")
        if path_value:
            path = Path(path_value)
            if not path.is_absolute() and base_dir is not None:
                path = base_dir / path
            if path.is_file():
                data = path.read_bytes()
                logger.debug("Loaded %s from %s (%d bytes)", prefix.upper(), path, len(data))
            else:
                logger.warning("%s image not found: %s", prefix.upper(), path)

    return StageImage(
        data=data,
        address=_get_int(fields, f"{prefix}Address", address),
        packet_size=_get_int(fields, f"{prefix}PacketSize", packet_size),
    )


def _mappings(raw: Any) -> dict[str, TypeMapping]:
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ProfileError("NVItemMappings must be an object")

    mappings = {}
    for key, entry in raw.items():
        if not isinstance(entry, dict):
            raise ProfileError(f"NVItemMappings[{key!r}] must be an object")
        fields = _fold(entry)
        mappings[str(key).strip().upper()] = TypeMapping(
            type=_item_type(fields.get("type", "Binary"), f"NVItemMappings[{key!r}]"),
            name=str(fields.get("name") or ""),
            description=str(fields.get("description") or ""),
        )
    return mappings


def _flash_files(raw: Any) -> tuple[FlashFileDefinition, ...]:
    if raw is None:
        return ()
    if not isinstance(raw, list):
        raise ProfileError("FlashFiles must be a list")

    result = []
    for index, entry in enumerate(raw):
        if not isinstance(entry, dict):
            raise ProfileError(f"FlashFiles[{index}] must be an object")
        fields = _fold(entry)
        label = f"FlashFiles[{index}]"
        result.append(FlashFileDefinition(
            name=str(fields.get("name") or f"region{index}"),
            base_address=_int_value(fields.get("baseaddress", 0), f"{label}.BaseAddress"),
            size=_int_value(fields.get("size", 0), f"{label}.Size"),
            file_name=str(fields.get("filename") or ""),
            description=str(fields.get("description") or ""),
            enabled=bool(fields.get("enabled", True)),
        ))
    return tuple(result)


def _erase_regions(raw: Any) -> tuple[EraseRegion, ...]:
    if raw is None:
        return DEFAULT_ERASE_REGIONS
    if not isinstance(raw, list):
        raise ProfileError("EraseRegions must be a list")

    regions = []
    for index, entry in enumerate(raw):
        if not isinstance(entry, dict):
            raise ProfileError(f"EraseRegions[{index}] must be an object")
        fields = _fold(entry)
        label = f"EraseRegions[{index}]"
        regions.append(EraseRegion(
            name=str(fields.get("name") or f"region{index}"),
            address=_int_value(fields.get("address", 0), f"{label}.Address"),
            size=_int_value(fields.get("size", 0), f"{label}.Size"),
        ))
    return tuple(regions)


def profile_from_dict(
    raw: Mapping[str, Any],
    base_dir: Optional[Path] = None,
    source_path: Optional[Path] = None,
) -> DeviceProfile:
    """
    Build a DeviceProfile from decoded profile JSON.

    Args:
        raw: Decoded JSON object.
        base_dir: Directory relative loader paths are resolved against.
        source_path: File the data came from.

    Raises:
        ProfileError: If a value is missing its expected shape.
    """
    if not isinstance(raw, Mapping):
        raise ProfileError("Profile must be a JSON object")

    fields = _fold(raw)
    return DeviceProfile(
        name=str(fields.get("name") or "Default"),
        description=str(fields.get("description") or ""),
        fdl1=_stage(fields, "fdl1", FDL1_ADDRESS, FDL1_PACKET_SIZE, base_dir),
        fdl2=_stage(fields, "fdl2", FDL2_ADDRESS, FDL2_PACKET_SIZE, base_dir),
        nv_base_address=_get_int(fields, "NVBaseAddress", DEFAULT_NV_BASE_ADDRESS),
        nv_data_size=_get_int(fields, "NVDataSize", DEFAULT_NV_DATA_SIZE),
        read_chunk_size=_get_int(fields, "ReadChunkSize", DEFAULT_READ_CHUNK_SIZE),
        nv_write_packet_size=_get_int(
            fields, "NVWritePacketSize", DEFAULT_NV_WRITE_PACKET_SIZE
        ),
        nv_item_mappings=_mappings(fields.get("nvitemmappings")),
        flash_files=_flash_files(fields.get("flashfiles")),
        erase_regions=_erase_regions(fields.get("eraseregions")),
        source_path=source_path,
    )


def load_profile(filepath: Union[str, Path]) -> DeviceProfile:
    """
    Load a device profile from a JSON file.

    Args:
        filepath: Profile file.

    Returns:
        The loaded profile.

    Raises:
        ProfileError: If the file cannot be read or is not a valid profile.
    """
    filepath = Path(filepath)
    try:
        raw = json.loads(filepath.read_text(encoding="utf-8-sig"))
    except OSError as e:
        raise ProfileError(f"Cannot read profile {filepath}: {e}") from e
    except json.JSONDecodeError as e:
        raise ProfileError(f"Invalid JSON in profile {filepath}: {e}") from e

    profile = profile_from_dict(raw, base_dir=filepath.parent, source_path=filepath)
    logger.info("Loaded profile '%s' from %s", profile.name, filepath)
    return profile


def profile_to_dict(profile: DeviceProfile) -> dict[str, Any]:
    """Serialize a profile to JSON-ready data, embedding the loaders."""

    def stage(prefix: str, image: StageImage) -> dict[str, Any]:
        return {
            f"{prefix}Data": base64.b64encode(image.data).decode("ascii") if image.data else None,
            f"{prefix}Address": image.address,
            f"{prefix}PacketSize": image.packet_size,
        }

    return {
        "Name": profile.name,
        "Description": profile.description,
        **stage("Fdl1", profile.fdl1),
        **stage("Fdl2", profile.fdl2),
        "NVBaseAddress": profile.nv_base_address,
        "NVDataSize": profile.nv_data_size,
        "ReadChunkSize": profile.read_chunk_size,
        "NVWritePacketSize": profile.nv_write_packet_size,
        "NVItemMappings": {
            key: {
                "Name": mapping.name,
                "Description": mapping.description,
                "Type": mapping.type.value,
            }
            for key, mapping in profile.nv_item_mappings.items()
        },
        "FlashFiles": [
            {
                "Name": f.name,
                "Description": f.description,
                "BaseAddress": f.base_address,
                "Size": f.size,
                "FileName": f.file_name,
                "Enabled": f.enabled,
            }
            for f in profile.flash_files
        ],
        "EraseRegions": [
            {"Name": r.name, "Address": r.address, "Size": r.size}
            for r in profile.erase_regions
        ],
    }


def save_profile(profile: DeviceProfile, filepath: Union[str, Path]) -> None:
    """Write a profile as indented JSON."""
    Path(filepath).write_text(
        json.dumps(profile_to_dict(profile), indent=2) + "\n", encoding="utf-8"
    )
