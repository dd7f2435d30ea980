"""
sprdnv - NV Image Editor Command-Line Interface
===============================================

This module implements the offline editor for NV images saved by
`sprdlink read-nv`. No device is needed.

Commands
--------
- **list**: List the items of an NV image
- **show**: Show one item in detail
- **set**: Change one item and save the image
- **compare**: Compare two NV images item by item

Usage Examples
--------------
List items, using a profile's names and types:
    $ sprdnv list nv_data.bin --profile sc6531e.json

Show the first IMEI:
    $ sprdnv show nv_data.bin 0x0005

Change it, writing a new file:
    $ sprdnv set nv_data.bin 0x0005 355027161482626 -o nv_new.bin

Set raw bytes:
    $ sprdnv set nv_data.bin 0x0123 "01 02 03 04" --hex

Compare a backup with a fresh read:
    $ sprdnv compare backup.bin nv_data.bin
"""

import logging
from pathlib import Path
from typing import Mapping, Optional

import click

from sprd_nvtool import __version__
from sprd_nvtool.cli.errors import handle_cli_exception
from sprd_nvtool.cli.params import NV_ID
from sprd_nvtool.errors import ValidationError
from sprd_nvtool.nv import (
    DiffStatus,
    NVItem,
    NVItemType,
    TypeMapping,
    compare_nv,
    find_item,
    hex_to_bytes,
    parse_nv_file,
    text_to_bytes,
    write_nv_file,
)
from sprd_nvtool.profile import load_profile

# Longest value shown in a table row
VALUE_WIDTH = 40

profile_option = click.option(
    "--profile",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="Device profile supplying NV names and types",
)


def _mappings(profile: Optional[Path]) -> Optional[Mapping[str, TypeMapping]]:
    if profile is None:
        return None
    return load_profile(profile).nv_item_mappings


def _clip(text: str, width: int = VALUE_WIDTH) -> str:
    return text if len(text) <= width else text[:width - 3] + "..."


def _hex_dump(data: bytes) -> list[str]:
    """Format data as 16-byte hex dump lines."""
    lines = []
    for offset in range(0, len(data), 16):
        chunk = data[offset:offset + 16]
        hex_part = " ".join(f"{b:02x}" for b in chunk)
        text_part = "".join(chr(b) if 32 <= b < 127 else "." for b in chunk)
        lines.append(f"  {offset:04x}  {hex_part:<47}  {text_part}")
    return lines


# =============================================================================
# Main CLI Group
# =============================================================================

@click.group()
@click.option(
    "-v", "--verbose",
    is_flag=True,
    help="Enable verbose output",
)
@click.version_option(__version__, "--version", "-V", prog_name="sprdnv")
@click.pass_context
def main(ctx: click.Context, verbose: bool) -> None:
    """
    NV image editor for Spreadtrum devices.

    Inspect, edit and compare NV images (.bin) saved from a device.

    \b
    Commands:
      list      List items of an NV image
      show      Show one item in detail
      set       Change an item and save the image
      compare   Compare two NV images

    \b
    Examples:
      sprdnv list nv_data.bin
      sprdnv show nv_data.bin 0x0005
      sprdnv set nv_data.bin 0x0005 355027161482626 -o nv_new.bin
    """
    ctx.obj = verbose
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(levelname)s: %(message)s",
    )


# =============================================================================
# List Command
# =============================================================================

@main.command("list")
@click.argument("nv_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@profile_option
@click.option(
    "--type", "-t", "type_filter",
    type=click.Choice([t.value for t in NVItemType], case_sensitive=False),
    default=None,
    help="Only list items of this type",
)
@click.pass_context
def cmd_list(
    ctx: click.Context,
    nv_file: Path,
    profile: Optional[Path],
    type_filter: Optional[str],
) -> None:
    """
    List the items of an NV image.

    \b
    Output format:
      ID      Name         Type     Len  Value
      0x0005  IMEI1        IMEI       8  355027161482626
    """
    try:
        items = parse_nv_file(nv_file, _mappings(profile))
        if type_filter:
            wanted = NVItemType.from_name(type_filter)
            items = [item for item in items if item.type is wanted]

        click.echo(f"{'ID':<7} {'Name':<16} {'Type':<7} {'Len':>5}  Value")
        click.echo("-" * 78)
        for item in items:
            click.echo(
                f"0x{item.id:04X}  {_clip(item.display_name, 16):<16} "
                f"{item.type.value:<7} {item.length:>5}  {_clip(item.text)}"
            )
        click.echo("-" * 78)
        click.echo(f"{len(items)} item(s)")

    except Exception as e:
        handle_cli_exception(e, verbose=ctx.obj)


# =============================================================================
# Show Command
# =============================================================================

@main.command("show")
@click.argument("nv_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.argument("item_id", type=NV_ID)
@profile_option
@click.pass_context
def cmd_show(ctx: click.Context, nv_file: Path, item_id: int, profile: Optional[Path]) -> None:
    """
    Show the first item with id ITEM_ID.

    ITEM_ID is decimal or 0x-prefixed hex.
    """
    try:
        items = parse_nv_file(nv_file, _mappings(profile))
        item = find_item(items, item_id)
        if item is None:
            click.echo(f"Error: NV item 0x{item_id:04X} not found", err=True)
            raise SystemExit(1)

        click.echo(f"ID:          0x{item.id:04X}")
        click.echo(f"Name:        {item.display_name}")
        if item.description:
            click.echo(f"Description: {item.description}")
        click.echo(f"Type:        {item.type.value}")
        click.echo(f"Offset:      0x{item.offset:X}")
        click.echo(f"Length:      {item.length} bytes")
        click.echo(f"Value:       {item.text}")
        if item.data:
            click.echo("Data:")
            for line in _hex_dump(item.data):
                click.echo(line)

        duplicates = sum(1 for other in items if other.id == item_id) - 1
        if duplicates:
            click.echo(f"({duplicates} more item(s) with this id)")

    except Exception as e:
        handle_cli_exception(e, verbose=ctx.obj)


# =============================================================================
# Set Command
# =============================================================================

def _encode_value(item: NVItem, value: str, as_hex: bool) -> bytes:
    """
    Encode a new value for an item.

    Raises:
        ValidationError: If the value cannot be encoded for the item type.
    """
    if as_hex:
        data = hex_to_bytes(value)
        if value.strip() and not data:
            raise ValidationError(f"'{value}' is not valid hex")
        return data

    data = text_to_bytes(value, item.type)
    if data is None or (value and not data):
        raise ValidationError(f"'{value}' is not a valid {item.type.value} value")
    return data


@main.command("set")
@click.argument("nv_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.argument("item_id", type=NV_ID)
@click.argument("value")
@click.option(
    "-o", "--output",
    type=click.Path(dir_okay=False, writable=True, path_type=Path),
    default=None,
    help="Output file (default: overwrite NV_FILE)",
)
@click.option(
    "--hex", "as_hex",
    is_flag=True,
    help="VALUE is raw hex bytes instead of text for the item type",
)
@profile_option
@click.pass_context
def cmd_set(
    ctx: click.Context,
    nv_file: Path,
    item_id: int,
    value: str,
    output: Optional[Path],
    as_hex: bool,
    profile: Optional[Path],
) -> None:
    """
    Set the first item with id ITEM_ID to VALUE and save the image.

    VALUE is interpreted according to the item type (IMEI digits, MAC
    "AA:BB:CC:DD:EE:FF", dotted IPv4, decimal integers, text or hex).
    An empty VALUE clears the item.

    The saved image has a zero checksum header; sprdlink write-nv
    recalculates it when writing.
    """
    try:
        items = parse_nv_file(nv_file, _mappings(profile))
        item = find_item(items, item_id)
        if item is None:
            click.echo(f"Error: NV item 0x{item_id:04X} not found", err=True)
            raise SystemExit(1)

        old_text = item.text
        item.data = _encode_value(item, value, as_hex)

        target = output or nv_file
        size = write_nv_file(target, items)
        click.echo(f"{item.display_name}: {old_text!r} -> {item.text!r}")
        click.echo(f"Saved {size} bytes to {target}")

    except Exception as e:
        handle_cli_exception(e, verbose=ctx.obj)


# =============================================================================
# Compare Command
# =============================================================================

@main.command("compare")
@click.argument("first", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.argument("second", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option(
    "--all", "show_all",
    is_flag=True,
    help="Also list identical items",
)
@profile_option
@click.pass_context
def cmd_compare(
    ctx: click.Context,
    first: Path,
    second: Path,
    show_all: bool,
    profile: Optional[Path],
) -> None:
    """
    Compare two NV images item by item.

    Exits with status 1 if the images differ.
    """
    try:
        mappings = _mappings(profile)
        results = compare_nv(
            parse_nv_file(first, mappings),
            parse_nv_file(second, mappings),
            include_identical=show_all,
        )

        changed = 0
        for diff in results:
            if diff.status is not DiffStatus.IDENTICAL:
                changed += 1
            left = _clip(diff.first.text, 24) if diff.first else "-"
            right = _clip(diff.second.text, 24) if diff.second else "-"
            click.echo(
                f"0x{diff.id:04X}  {_clip(diff.name, 16):<16} "
                f"{diff.status.value:<15} {left:<24}  {right}"
            )

        if changed:
            click.echo(f"{changed} item(s) differ")
        else:
            click.echo("Images are identical")

    except Exception as e:
        handle_cli_exception(e, verbose=ctx.obj)

    if changed:
        raise SystemExit(1)


# =============================================================================
# Entry Point
# =============================================================================

if __name__ == "__main__":
    main()
