"""
sprdlink - Boot-Mode Device Command-Line Interface
==================================================

This module implements the command-line interface for talking to a
Spreadtrum device in boot mode. Every device command runs the full
connect sequence (probe, FDL1, FDL2) before doing its work, so the
device must be freshly in boot mode each time.

Usage Examples
--------------
List available serial ports:
    $ sprdlink ports

Back up the NV blob:
    $ sprdlink --profile sc6531e.json read-nv nv_data.bin

Write an edited NV blob and clear the runtime copy:
    $ sprdlink --profile sc6531e.json write-nv nv_data.bin --erase runtime

Dump the profile's extra flash regions:
    $ sprdlink --profile sc6531e.json dump-files ./backup/

Hardware Setup
--------------
1. Power the phone off and remove the battery for a few seconds
2. Hold the boot key (usually the centre or '*' key) while plugging in USB
3. The boot ROM enumerates as a serial port (VID 0x1782, PID 0x4D00)

On Linux the user needs access to the port (dialout group).

Exit Codes
----------
0 - Success
1 - Connection, protocol or NV error
2 - Invalid arguments or configuration error
"""

import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

import click

from sprd_nvtool import __version__
from sprd_nvtool.comms import (
    BootSession,
    SerialTransport,
    SessionConfig,
    SessionState,
    find_sprd_port,
    format_port_list,
    list_serial_ports,
    wait_for_sprd_port,
)
from sprd_nvtool.comms.nvtransfer import dump_flash_files, read_nv_blob, write_nv
from sprd_nvtool.cli.errors import ExitCode
from sprd_nvtool.cli.params import ADDRESS
from sprd_nvtool.errors import (
    CommsError,
    ProfileError,
    SprdError,
    TransportError,
    ValidationError,
)
from sprd_nvtool.nv import check_nv_size, parse_nv, read_nv_file
from sprd_nvtool.profile import DeviceProfile, load_profile

# Configure logging
logger = logging.getLogger(__name__)


# =============================================================================
# CLI Context and Utilities
# =============================================================================

class Context:
    """
    Shared context for CLI commands.

    Stores common options like port, profile and verbosity.
    """

    def __init__(self) -> None:
        self.port: Optional[str] = None
        self.profile_path: Optional[Path] = None
        self.fdl1_path: Optional[Path] = None
        self.fdl2_path: Optional[Path] = None
        self.verbose: bool = False
        self.wait: float = 0.0

    def setup_logging(self) -> None:
        """Configure logging based on verbosity."""
        level = logging.DEBUG if self.verbose else logging.INFO
        logging.basicConfig(
            level=level,
            format="%(levelname)s: %(message)s" if self.verbose else "%(message)s",
        )

    def load_profile(self) -> DeviceProfile:
        """
        Load the selected profile and apply any loader overrides.

        Raises:
            ProfileError: If the profile file is invalid.
            SystemExit: If a loader file cannot be read.
        """
        profile = load_profile(self.profile_path) if self.profile_path else DeviceProfile()
        try:
            fdl1 = self.fdl1_path.read_bytes() if self.fdl1_path else None
            fdl2 = self.fdl2_path.read_bytes() if self.fdl2_path else None
        except OSError as e:
            click.echo(f"Error reading loader: {e}", err=True)
            raise SystemExit(ExitCode.INVALID_ARGS)
        return profile.with_stages(fdl1, fdl2)

    def resolve_port(self) -> Optional[str]:
        """Return the selected port, auto-detecting if none was given."""
        if self.port:
            return self.port
        if self.wait > 0:
            click.echo(f"Waiting up to {self.wait:g}s for a device in boot mode...")
            return wait_for_sprd_port(timeout=self.wait)
        return find_sprd_port()


pass_context = click.make_pass_decorator(Context, ensure=True)


def progress_bar(current: int, total: int) -> None:
    """Simple text progress bar for flash transfers."""
    if total == 0:
        return
    percent = current * 100 // total
    filled = percent // 2
    bar = "=" * filled + "-" * (50 - filled)
    click.echo(f"\r[{bar}] {percent:3d}% ({current}/{total} bytes)", nl=False)
    if current >= total:
        click.echo()  # Newline at end


def report_error(error: SprdError) -> None:
    """Print an error with a category prefix and exit with status 1."""
    if isinstance(error, TransportError):
        click.echo(f"Port error: {error}", err=True)
    elif isinstance(error, CommsError):
        click.echo(f"Communication error: {error}", err=True)
    elif isinstance(error, ProfileError):
        click.echo(f"Profile error: {error}", err=True)
    else:
        click.echo(f"Error: {error}", err=True)
    raise SystemExit(1)


@contextmanager
def device_session(ctx: Context) -> Iterator[BootSession]:
    """
    Connect to the device and yield a READY session.

    The serial port is closed on exit. A session that was not reset is
    disconnected without touching the device.
    """
    profile = ctx.load_profile()
    profile.require_stages()

    port_device = ctx.resolve_port()
    if not port_device:
        click.echo("Error: No serial port specified and no device in boot mode found.", err=True)
        click.echo("Use --port option or 'sprdlink ports' to find available ports.", err=True)
        raise SystemExit(1)

    session = BootSession(profile, SessionConfig.from_env())
    click.echo(f"Connecting to device on {port_device} (profile '{profile.name}')...")

    with SerialTransport(port_device) as transport:
        session.connect(transport)
        click.echo("Device ready.")
        try:
            yield session
        finally:
            if session.state is not SessionState.DISCONNECTED:
                session.disconnect()


# =============================================================================
# Main CLI Group
# =============================================================================

@click.group()
@click.option(
    "-p", "--port",
    type=str,
    default=None,
    help="Serial port device (auto-detect if not specified)",
)
@click.option(
    "--profile",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="Device profile (JSON)",
)
@click.option(
    "--fdl1",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="FDL1 image (overrides the profile)",
)
@click.option(
    "--fdl2",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="FDL2 image (overrides the profile)",
)
@click.option(
    "--wait",
    type=float,
    default=0.0,
    help="Seconds to wait for a device to appear when auto-detecting",
)
@click.option(
    "-v", "--verbose",
    is_flag=True,
    help="Enable verbose output",
)
@click.version_option(version=__version__, prog_name="sprdlink")
@pass_context
def main(
    ctx: Context,
    port: Optional[str],
    profile: Optional[Path],
    fdl1: Optional[Path],
    fdl2: Optional[Path],
    wait: float,
    verbose: bool,
) -> None:
    """
    Read and write the flash of a Spreadtrum device in boot mode.

    Every device command uploads the FDL1 and FDL2 loaders from the
    profile (or --fdl1 / --fdl2) before doing its work.

    \b
    Examples:
      sprdlink ports
      sprdlink --profile dev.json read-nv nv_data.bin
      sprdlink --profile dev.json write-nv nv_data.bin --erase runtime
    """
    ctx.port = port
    ctx.profile_path = profile
    ctx.fdl1_path = fdl1
    ctx.fdl2_path = fdl2
    ctx.wait = wait
    ctx.verbose = verbose
    ctx.setup_logging()


# =============================================================================
# Ports Command
# =============================================================================

@main.command()
@click.option(
    "--detailed", "-d",
    is_flag=True,
    help="Show detailed port information",
)
@pass_context
def ports(ctx: Context, detailed: bool) -> None:
    """
    List available serial ports.

    Ports belonging to a Spreadtrum device are marked; a device in boot
    mode is suggested for use.

    Example:
        sprdlink ports
        sprdlink ports --detailed
    """
    port_list = list_serial_ports()

    if not port_list:
        click.echo("No serial ports found.")
        click.echo("\nTips:")
        click.echo("  - Put the phone in boot mode and connect USB")
        click.echo("  - On Linux, ensure you have permission (dialout group)")
        return

    click.echo("Available serial ports:")
    click.echo(format_port_list(port_list, verbose=detailed))

    auto_port = find_sprd_port(port_list)
    if auto_port:
        click.echo(f"\nSuggested port: {auto_port}")
    else:
        click.echo("\nNo Spreadtrum device detected.")


# =============================================================================
# NV Commands
# =============================================================================

@main.command("read-nv")
@click.argument("output", type=click.Path(dir_okay=False, writable=True, path_type=Path))
@click.option(
    "--reset", "do_reset",
    is_flag=True,
    help="Reset the device after reading",
)
@pass_context
def read_nv_command(ctx: Context, output: Path, do_reset: bool) -> None:
    """
    Read the NV blob and save it to OUTPUT.

    The blob is read from the profile's NV address and size.

    Example:
        sprdlink --profile dev.json read-nv nv_data.bin
    """
    try:
        with device_session(ctx) as session:
            profile = session.profile
            click.echo(
                f"Reading NV: 0x{profile.nv_data_size:X} bytes at 0x{profile.nv_base_address:08X}"
            )
            blob = read_nv_blob(session, progress=progress_bar)
            if do_reset:
                session.reset()

        try:
            output.write_bytes(blob)
        except OSError as e:
            click.echo(f"Error writing file: {e}", err=True)
            raise SystemExit(ExitCode.INVALID_ARGS)
        items = parse_nv(blob, profile.nv_item_mappings)
        click.echo(f"Saved {len(blob)} bytes to {output} ({len(items)} NV items)")

    except SprdError as e:
        report_error(e)


@main.command("write-nv")
@click.argument("input_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option(
    "--erase", "-e",
    multiple=True,
    help="Erase a profile region after writing (e.g. runtime, user); repeatable",
)
@click.option(
    "--no-reset",
    is_flag=True,
    help="Leave the device in the loader after writing",
)
@click.option(
    "--yes", "-y",
    is_flag=True,
    help="Do not ask for confirmation",
)
@pass_context
def write_nv_command(
    ctx: Context,
    input_file: Path,
    erase: tuple[str, ...],
    no_reset: bool,
    yes: bool,
) -> None:
    """
    Write the NV image INPUT_FILE to the device.

    The image is parsed and rebuilt, so records are re-aligned and the
    checksum header is recalculated before writing.

    Example:
        sprdlink --profile dev.json write-nv nv_data.bin --erase runtime
    """
    try:
        profile = ctx.load_profile()
        for name in erase:
            profile.erase_region(name)

        blob = read_nv_file(input_file)
        try:
            check_nv_size(blob, profile.nv_data_size)
        except ValidationError as e:
            click.echo(f"Warning: {e}", err=True)
            if not yes and not click.confirm("Write it anyway?", default=False):
                raise SystemExit(1)

        items = parse_nv(blob, profile.nv_item_mappings)
        if not items:
            click.echo("Error: NV image contains no records.", err=True)
            raise SystemExit(1)

        if not yes and not click.confirm(
            f"Write {len(items)} NV items to the device?", default=False
        ):
            raise SystemExit(1)

        with device_session(ctx) as session:
            checksum = write_nv(
                session, items, erase=erase, reset=not no_reset, progress=progress_bar
            )

        click.echo(f"NV written (checksum 0x{checksum:X}).")
        if not no_reset:
            click.echo("Device reset.")

    except SprdError as e:
        report_error(e)


# =============================================================================
# Flash Commands
# =============================================================================

@main.command("read-flash")
@click.argument("address", type=ADDRESS)
@click.argument("size", type=ADDRESS)
@click.argument("output", type=click.Path(dir_okay=False, writable=True, path_type=Path))
@pass_context
def read_flash_command(ctx: Context, address: int, size: int, output: Path) -> None:
    """
    Read SIZE bytes of flash at ADDRESS into OUTPUT.

    Example:
        sprdlink --profile dev.json read-flash 0x90000000 0x10000 fixnv.bin
    """
    try:
        with device_session(ctx) as session:
            data = session.read_flash(address, size, progress=progress_bar)

        try:
            output.write_bytes(data)
        except OSError as e:
            click.echo(f"Error writing file: {e}", err=True)
            raise SystemExit(ExitCode.INVALID_ARGS)
        click.echo(f"Saved {len(data)} bytes to {output}")

    except SprdError as e:
        report_error(e)


@main.command("dump-files")
@click.argument("directory", type=click.Path(file_okay=False, path_type=Path))
@pass_context
def dump_files_command(ctx: Context, directory: Path) -> None:
    """
    Save the profile's enabled flash files into DIRECTORY.

    Example:
        sprdlink --profile dev.json dump-files ./backup/
    """
    try:
        profile = ctx.load_profile()
        if not profile.enabled_flash_files:
            click.echo("No enabled flash files defined in the profile.")
            return

        with device_session(ctx) as session:
            paths = dump_flash_files(session, directory, progress=progress_bar)

        for path in paths:
            click.echo(f"  {path}")
        click.echo(f"{len(paths)} file(s) saved")

    except SprdError as e:
        report_error(e)
    except OSError as e:
        click.echo(f"Error writing files: {e}", err=True)
        raise SystemExit(ExitCode.INVALID_ARGS)


@main.command("erase")
@click.argument("address", type=ADDRESS)
@click.argument("size", type=ADDRESS)
@click.option(
    "--yes", "-y",
    is_flag=True,
    help="Do not ask for confirmation",
)
@pass_context
def erase_command(ctx: Context, address: int, size: int, yes: bool) -> None:
    """
    Erase SIZE bytes of flash at ADDRESS.

    Example:
        sprdlink --profile dev.json erase 0x90000003 0x4000
    """
    if not yes and not click.confirm(
        f"Erase 0x{size:X} bytes at 0x{address:08X}?", default=False
    ):
        raise SystemExit(1)

    try:
        with device_session(ctx) as session:
            session.erase_flash(address, size)
        click.echo("Erase complete.")

    except SprdError as e:
        report_error(e)


@main.command("reset")
@pass_context
def reset_command(ctx: Context) -> None:
    """
    Load the loaders and reset the device out of boot mode.

    Example:
        sprdlink --profile dev.json reset
    """
    try:
        with device_session(ctx) as session:
            session.reset()
        click.echo("Device reset.")

    except SprdError as e:
        report_error(e)


# =============================================================================
# Entry Point
# =============================================================================

if __name__ == "__main__":
    main()
