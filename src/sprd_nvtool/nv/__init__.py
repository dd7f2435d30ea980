"""
NV Parameter Blob Module
========================

This module reads, edits and rebuilds the tag-length-value NV parameter
blob stored in the device's flash. It is independent of the serial
protocol: it only needs the blob bytes (from a flash read or a backup
file) and, optionally, a profile's type-mapping table.

Quick Start
-----------
    from sprd_nvtool.nv import parse_nv, build_nv, find_item

    items = parse_nv(blob, profile.nv_item_mappings)
    imei = find_item(items, 0x0005)
    imei.text = "355027161482626"
    new_blob = build_nv(items)
"""

from sprd_nvtool.nv.items import (
    DEFAULT_TYPE_MAPPINGS,
    NVItem,
    NVItemType,
    TypeMapping,
    bytes_to_hex,
    bytes_to_text,
    hex_to_bytes,
    imei_to_text,
    mapping_key,
    text_to_bytes,
    text_to_imei,
)
from sprd_nvtool.nv.parser import (
    HEADER_SIZE,
    check_nv_size,
    find_item,
    infer_type,
    iter_records,
    parse_nv,
    parse_nv_file,
    read_nv_file,
    resolve_types,
)
from sprd_nvtool.nv.builder import (
    build_nv,
    build_nv_image,
    write_nv_file,
)
from sprd_nvtool.nv.compare import (
    DiffStatus,
    NVDifference,
    compare_nv,
)

__all__ = [
    # Items
    "NVItem",
    "NVItemType",
    "TypeMapping",
    "DEFAULT_TYPE_MAPPINGS",
    "mapping_key",
    "bytes_to_text",
    "text_to_bytes",
    "bytes_to_hex",
    "hex_to_bytes",
    "imei_to_text",
    "text_to_imei",
    # Parser
    "HEADER_SIZE",
    "parse_nv",
    "parse_nv_file",
    "read_nv_file",
    "iter_records",
    "infer_type",
    "resolve_types",
    "find_item",
    "check_nv_size",
    # Builder
    "build_nv",
    "build_nv_image",
    "write_nv_file",
    # Compare
    "DiffStatus",
    "NVDifference",
    "compare_nv",
]
