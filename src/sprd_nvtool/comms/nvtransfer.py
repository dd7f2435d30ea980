"""
NV Transfer Workflows
=====================

High-level operations built on a READY BootSession: reading and writing
the NV blob at the profile's address and dumping the profile's extra
flash regions to files.

Writing NV
----------
    1. build_nv_image: serialize the items, stamp the checksum header
    2. write_data(nv_write_packet_size, image, nv_base_address, checksum)
    3. erase the requested regions (the loader keeps derived NV copies
       there; erasing forces the firmware to rebuild them)
    4. reset, which ends the session

Usage:
    items = read_nv(session)
    find_item(items, 0x0005).text = "355027161482626"
    write_nv(session, items, erase=("runtime",))
"""

import logging
from pathlib import Path
from typing import Iterable, Optional, Sequence, Union

from sprd_nvtool.comms.session import BootSession, ProgressCallback
from sprd_nvtool.nv.builder import build_nv_image
from sprd_nvtool.nv.items import NVItem
from sprd_nvtool.nv.parser import parse_nv
from sprd_nvtool.profile import FlashFileDefinition

logger = logging.getLogger(__name__)


def read_nv_blob(
    session: BootSession,
    progress: Optional[ProgressCallback] = None,
) -> bytes:
    """Read the raw NV blob described by the session's profile."""
    profile = session.profile
    return session.read_flash(profile.nv_base_address, profile.nv_data_size, progress)


def read_nv(
    session: BootSession,
    progress: Optional[ProgressCallback] = None,
) -> list[NVItem]:
    """
    Read and parse the NV blob.

    Items are typed with the session profile's mapping table.
    """
    blob = read_nv_blob(session, progress)
    return parse_nv(blob, session.profile.nv_item_mappings)


def write_nv(
    session: BootSession,
    items: Iterable[NVItem],
    erase: Sequence[str] = (),
    reset: bool = True,
    progress: Optional[ProgressCallback] = None,
) -> int:
    """
    Write NV items to the device.

    Args:
        session: READY session.
        items: Items to write, in blob order.
        erase: Names of profile erase regions to clear after the write.
        reset: Reset the device afterwards (ends the session).
        progress: Called with (bytes_done, total) while writing.

    Returns:
        The checksum stamped into the image.

    Raises:
        ProfileError: If an erase region name is unknown. Checked before
                      anything is sent.
        CommsError: If any device step fails. Later steps are skipped.
    """
    profile = session.profile
    regions = [profile.erase_region(name) for name in erase]

    image, checksum = build_nv_image(items)
    logger.info("Writing NV image: %d bytes, checksum 0x%X", len(image), checksum)
    session.write_data(
        profile.nv_write_packet_size, image, profile.nv_base_address, checksum, progress
    )

    for region in regions:
        logger.info("Erasing %s NV region", region.name)
        session.erase_flash(region.address, region.size)

    if reset:
        session.reset()

    return checksum


def dump_flash_files(
    session: BootSession,
    directory: Union[str, Path],
    definitions: Optional[Iterable[FlashFileDefinition]] = None,
    progress: Optional[ProgressCallback] = None,
) -> list[Path]:
    """
    Read flash regions and save each one to a file.

    Args:
        session: READY session.
        directory: Output directory (created if missing).
        definitions: Regions to dump; defaults to the profile's enabled
                     flash files.
        progress: Called with (bytes_done, total) for each region.

    Returns:
        Paths of the written files, in order.
    """
    if definitions is None:
        definitions = session.profile.enabled_flash_files

    directory = Path(directory)
    directory.mkdir(parents=True, exist_ok=True)

    written = []
    for definition in definitions:
        logger.info(
            "Reading flash file %s (0x%08X, 0x%X bytes)",
            definition.name, definition.base_address, definition.size,
        )
        data = session.read_flash(definition.base_address, definition.size, progress)
        path = directory / definition.output_name
        path.write_bytes(data)
        logger.info("Saved %s (%d bytes)", path, len(data))
        written.append(path)

    if not written:
        logger.info("No flash files to dump")
    return written
