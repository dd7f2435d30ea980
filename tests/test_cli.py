"""
Tests for the Command-Line Tools
================================

sprdlink commands run end to end against the scripted device from
conftest.py, with SerialTransport replaced. sprdnv commands work on
image files in a temporary directory.
"""

import base64
import json
from unittest.mock import patch

import pytest
from click.testing import CliRunner

from sprd_nvtool import __version__
from sprd_nvtool.comms.frame import Command
from sprd_nvtool.comms.transport import PortInfo
from sprd_nvtool.nv import find_item, parse_nv_file

from conftest import FDL1_IMAGE, FDL2_IMAGE, ScriptedTransport

NV_BASE = 0x90000001
IMEI_BYTES = bytes([0x3A, 0x55, 0x20, 0x17, 0x16, 0x84, 0x62, 0x62])

# Three records: "abc", IMEI2 and an empty record
NV_IMAGE = (
    bytes(4)
    + bytes([0x01, 0x00, 0x03, 0x00]) + b"abc" + b"\x00"
    + bytes([0x79, 0x01, 0x08, 0x00]) + IMEI_BYTES
    + bytes([0x02, 0x00, 0x00, 0x00])
)


class ContextTransport(ScriptedTransport):
    """ScriptedTransport usable in a with statement, like SerialTransport."""

    def __enter__(self):
        self.open()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


@pytest.fixture
def profile_file(tmp_path):
    """Profile JSON matching the scripted device's small geometry."""
    path = tmp_path / "device.json"
    path.write_text(json.dumps({
        "Name": "Test device",
        "Fdl1Data": base64.b64encode(FDL1_IMAGE).decode(),
        "Fdl1PacketSize": "0x10",
        "Fdl2Data": base64.b64encode(FDL2_IMAGE).decode(),
        "Fdl2PacketSize": "0x20",
        "NVBaseAddress": NV_BASE,
        "NVDataSize": 0x40,
        "ReadChunkSize": 0x10,
        "NVWritePacketSize": 0x20,
        "FlashFiles": [
            {"Name": "fixnv", "BaseAddress": "0x90000000", "Size": 32},
        ],
    }), encoding="utf-8")
    return path


@pytest.fixture
def cli_transport(clock, device, monkeypatch):
    """Scripted transport handed out in place of SerialTransport."""
    transport = ContextTransport(clock, device)
    monkeypatch.setattr(
        "sprd_nvtool.cli.sprdlink.SerialTransport", lambda port_device: transport
    )
    return transport


def run_sprdlink(profile_file, *args):
    from sprd_nvtool.cli.sprdlink import main

    runner = CliRunner()
    return runner.invoke(main, ["-p", "/dev/ttyTEST", "--profile", str(profile_file), *args])


# =============================================================================
# sprdlink Tests
# =============================================================================

class TestSprdlinkPorts:
    """Tests for 'sprdlink ports'."""

    def test_no_ports(self):
        from sprd_nvtool.cli.sprdlink import main

        runner = CliRunner()
        with patch("sprd_nvtool.cli.sprdlink.list_serial_ports", return_value=[]):
            result = runner.invoke(main, ["ports"])

        assert result.exit_code == 0
        assert "No serial ports found." in result.output

    def test_suggests_boot_port(self):
        from sprd_nvtool.cli.sprdlink import main

        boot = PortInfo("/dev/ttyACM0", "SPRD U2S Diag", None, None, None, 0x1782, 0x4D00)
        runner = CliRunner()
        with patch("sprd_nvtool.cli.sprdlink.list_serial_ports", return_value=[boot]):
            result = runner.invoke(main, ["ports"])

        assert result.exit_code == 0
        assert "[boot mode]" in result.output
        assert "Suggested port: /dev/ttyACM0" in result.output

    def test_version(self):
        from sprd_nvtool.cli.sprdlink import main

        result = CliRunner().invoke(main, ["--version"])
        assert __version__ in result.output


class TestSprdlinkDevice:
    """Tests for sprdlink device commands."""

    def test_read_nv(self, profile_file, cli_transport, device, tmp_path):
        device.flash[NV_BASE] = NV_IMAGE
        output = tmp_path / "nv.bin"

        result = run_sprdlink(profile_file, "read-nv", str(output))

        assert result.exit_code == 0, result.output
        assert output.read_bytes() == NV_IMAGE + bytes(0x40 - len(NV_IMAGE))
        assert "Saved 64 bytes" in result.output
        assert not cli_transport.is_open

    def test_read_nv_with_reset(self, profile_file, cli_transport, device, tmp_path):
        result = run_sprdlink(profile_file, "read-nv", str(tmp_path / "nv.bin"), "--reset")

        assert result.exit_code == 0, result.output
        assert device.types()[-1] == Command.RESET

    def test_write_nv(self, profile_file, cli_transport, device, tmp_path):
        image = tmp_path / "nv.bin"
        image.write_bytes(NV_IMAGE + bytes(0x40 - len(NV_IMAGE)))

        result = run_sprdlink(profile_file, "write-nv", str(image), "--erase", "runtime", "-y")

        assert result.exit_code == 0, result.output
        assert "NV written (checksum 0x" in result.output
        assert "Device reset." in result.output
        assert device.types()[-2:] == [Command.ERASE_FLASH, Command.RESET]

    def test_write_nv_unknown_region(self, profile_file, cli_transport, tmp_path):
        image = tmp_path / "nv.bin"
        image.write_bytes(NV_IMAGE)

        result = run_sprdlink(profile_file, "write-nv", str(image), "--erase", "nowhere", "-y")

        assert result.exit_code == 1
        assert "Profile error: Unknown erase region 'nowhere'" in result.output
        assert cli_transport.written == []

    def test_write_nv_size_mismatch_declined(self, profile_file, cli_transport, tmp_path):
        image = tmp_path / "nv.bin"
        image.write_bytes(NV_IMAGE)

        from sprd_nvtool.cli.sprdlink import main
        result = CliRunner().invoke(
            main,
            ["-p", "/dev/ttyTEST", "--profile", str(profile_file), "write-nv", str(image)],
            input="n\n",
        )

        assert result.exit_code == 1
        assert "Warning: NV image is 28 bytes" in result.output
        assert cli_transport.written == []

    def test_write_nv_empty_image(self, profile_file, cli_transport, tmp_path):
        image = tmp_path / "nv.bin"
        image.write_bytes(bytes(4))

        result = run_sprdlink(profile_file, "write-nv", str(image), "-y")

        assert result.exit_code == 1
        assert "contains no records" in result.output

    def test_read_flash(self, profile_file, cli_transport, device, tmp_path):
        device.flash[0x90000000] = b"\x5A" * 0x20
        output = tmp_path / "flash.bin"

        result = run_sprdlink(profile_file, "read-flash", "0x90000000", "0x20", str(output))

        assert result.exit_code == 0, result.output
        assert output.read_bytes() == b"\x5A" * 0x20

    def test_read_flash_bad_address(self, profile_file, cli_transport, tmp_path):
        result = run_sprdlink(profile_file, "read-flash", "zz", "0x20", str(tmp_path / "x"))

        assert result.exit_code == 2
        assert "not a valid number" in result.output

    def test_dump_files(self, profile_file, cli_transport, device, tmp_path):
        device.flash[0x90000000] = b"\x11" * 32
        out = tmp_path / "dump"

        result = run_sprdlink(profile_file, "dump-files", str(out))

        assert result.exit_code == 0, result.output
        assert (out / "fixnv.bin").read_bytes() == b"\x11" * 32
        assert "1 file(s) saved" in result.output

    def test_erase(self, profile_file, cli_transport, device):
        result = run_sprdlink(profile_file, "erase", "0x90000003", "0x4000", "-y")

        assert result.exit_code == 0, result.output
        assert "Erase complete." in result.output
        assert device.types()[-1] == Command.ERASE_FLASH

    def test_reset(self, profile_file, cli_transport, device):
        result = run_sprdlink(profile_file, "reset")

        assert result.exit_code == 0, result.output
        assert "Device reset." in result.output

    def test_silent_device(self, profile_file, cli_transport, device, tmp_path):
        device.handlers[Command.CHECK_BAUD] = lambda request: None

        result = run_sprdlink(profile_file, "read-nv", str(tmp_path / "nv.bin"))

        assert result.exit_code == 1
        assert "Communication error: CHECK_BAUD: no response after 3 attempts" in result.output

    def test_no_port_found(self, profile_file, tmp_path):
        from sprd_nvtool.cli.sprdlink import main

        with patch("sprd_nvtool.cli.sprdlink.find_sprd_port", return_value=None):
            result = CliRunner().invoke(
                main, ["--profile", str(profile_file), "read-nv", str(tmp_path / "nv.bin")]
            )

        assert result.exit_code == 1
        assert "no device in boot mode found" in result.output

    def test_unwritable_output(self, profile_file, cli_transport, device, tmp_path):
        output = tmp_path / "missing" / "nv.bin"

        result = run_sprdlink(profile_file, "read-nv", str(output))

        assert result.exit_code == 2
        assert "Error writing file:" in result.output
        assert not cli_transport.is_open

    def test_read_flash_unwritable_output(self, profile_file, cli_transport, tmp_path):
        output = tmp_path / "missing" / "flash.bin"

        result = run_sprdlink(profile_file, "read-flash", "0x90000000", "0x20", str(output))

        assert result.exit_code == 2
        assert "Error writing file:" in result.output

    def test_dump_directory_not_creatable(self, profile_file, cli_transport, tmp_path):
        blocker = tmp_path / "blocker"
        blocker.write_bytes(b"")

        result = run_sprdlink(profile_file, "dump-files", str(blocker / "dump"))

        assert result.exit_code == 2
        assert "Error writing files:" in result.output
        assert not cli_transport.is_open

    def test_unreadable_loader(self, profile_file, cli_transport, tmp_path):
        from pathlib import Path

        from sprd_nvtool.cli.sprdlink import main

        fdl1 = tmp_path / "fdl1.bin"
        fdl1.write_bytes(FDL1_IMAGE)

        with patch.object(Path, "read_bytes", side_effect=PermissionError("denied")):
            result = CliRunner().invoke(main, [
                "-p", "/dev/ttyTEST", "--profile", str(profile_file),
                "--fdl1", str(fdl1), "reset",
            ])

        assert result.exit_code == 2
        assert "Error reading loader: denied" in result.output
        assert cli_transport.written == []

    def test_missing_loaders(self, cli_transport, tmp_path):
        from sprd_nvtool.cli.sprdlink import main

        result = CliRunner().invoke(main, ["-p", "/dev/ttyTEST", "reset"])

        assert result.exit_code == 1
        assert "Profile error: Profile 'Default' has no FDL1 or FDL2 image" in result.output
        assert cli_transport.written == []


# =============================================================================
# sprdnv Tests
# =============================================================================

@pytest.fixture
def nv_file(tmp_path):
    path = tmp_path / "nv.bin"
    path.write_bytes(NV_IMAGE)
    return path


def run_sprdnv(*args, **kwargs):
    from sprd_nvtool.cli.sprdnv import main

    return CliRunner().invoke(main, [str(arg) for arg in args], **kwargs)


class TestSprdnv:
    """Tests for the sprdnv image editor."""

    def test_list(self, nv_file):
        result = run_sprdnv("list", nv_file)

        assert result.exit_code == 0, result.output
        assert "0x0179  IMEI2" in result.output
        assert "355027161482626" in result.output
        assert "3 item(s)" in result.output

    def test_list_type_filter(self, nv_file):
        result = run_sprdnv("list", nv_file, "--type", "imei")

        assert result.exit_code == 0, result.output
        assert "1 item(s)" in result.output

    def test_list_with_profile_names(self, nv_file, tmp_path):
        profile = tmp_path / "names.json"
        profile.write_text(json.dumps({
            "NVItemMappings": {"NV_0001": {"Name": "Label", "Type": "String"}},
        }), encoding="utf-8")

        result = run_sprdnv("list", nv_file, "--profile", profile)

        assert "0x0001  Label" in result.output

    def test_show(self, nv_file):
        result = run_sprdnv("show", nv_file, "0x0179")

        assert result.exit_code == 0, result.output
        assert "Name:        IMEI2" in result.output
        assert "Type:        IMEI" in result.output
        assert "Value:       355027161482626" in result.output
        assert "3a 55 20 17 16 84 62 62" in result.output

    def test_show_missing(self, nv_file):
        result = run_sprdnv("show", nv_file, "0x1234")

        assert result.exit_code == 1
        assert "NV item 0x1234 not found" in result.output

    def test_show_id_out_of_range(self, nv_file):
        result = run_sprdnv("show", nv_file, "0x10000")
        assert result.exit_code == 2

    def test_set_imei(self, nv_file, tmp_path):
        output = tmp_path / "new.bin"

        result = run_sprdnv("set", nv_file, "0x0179", "490154203237518", "-o", output)

        assert result.exit_code == 0, result.output
        assert "IMEI2: '355027161482626' -> '490154203237518'" in result.output
        assert find_item(parse_nv_file(output), 0x0179).text == "490154203237518"
        assert nv_file.read_bytes() == NV_IMAGE

    def test_set_in_place_hex(self, nv_file):
        result = run_sprdnv("set", nv_file, "1", "41 42", "--hex")

        assert result.exit_code == 0, result.output
        assert find_item(parse_nv_file(nv_file), 1).data == b"AB"

    def test_set_invalid_value(self, nv_file):
        result = run_sprdnv("set", nv_file, "0x0179", "123")

        assert result.exit_code == 1
        assert "Error: '123' is not a valid IMEI value" in result.output
        assert nv_file.read_bytes() == NV_IMAGE

    def test_compare_identical(self, nv_file):
        result = run_sprdnv("compare", nv_file, nv_file)

        assert result.exit_code == 0
        assert "Images are identical" in result.output

    def test_compare_different(self, nv_file, tmp_path):
        other = tmp_path / "other.bin"
        other.write_bytes(NV_IMAGE[:8] + b"xyz" + NV_IMAGE[11:])

        result = run_sprdnv("compare", nv_file, other)

        assert result.exit_code == 1
        assert "Different" in result.output
        assert "1 item(s) differ" in result.output

    def test_missing_file(self, tmp_path):
        result = run_sprdnv("list", tmp_path / "absent.bin")
        assert result.exit_code == 2

    def test_version(self):
        result = run_sprdnv("--version")
        assert f"sprdnv, version {__version__}" in result.output
