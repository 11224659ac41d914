#  SPDX-License-Identifier: MIT OR Apache-2.0
#  Copyright (c) 2026 gwz

import struct
import zipfile
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from ia_errors import ConfigurationError

FIXTURES_DIR = Path(__file__).resolve().parent / "fixtures"
DEFAULT_FIXTURE_NAME = "payload.zip"

# zip local file header: signature .. extra field length, then name and extra
_LOCAL_HEADER = struct.Struct("<4sHHHHHIIIHH")
_LOCAL_HEADER_MAGIC = b"PK\x03\x04"


@dataclass(frozen=True)
class PayloadSpec:
    """
    Location and sizes of a raw-deflate payload inside a container file.

    Attributes:
        header_len:         Bytes of container metadata skipped before the payload.
        compressed_len:     Bytes of deflate data read after the header.
        uncompressed_len:   Exact size the payload decompresses to.
    """
    header_len: int
    compressed_len: int
    uncompressed_len: int

    def validate(self) -> "PayloadSpec":
        for name in ("header_len", "compressed_len", "uncompressed_len"):
            value = getattr(self, name)
            if value < 0 or (name != "header_len" and value == 0):
                raise ConfigurationError("CFG-0050", f"invalid payload {name}: [{value}]")
        return self


# fixtures/payload.zip: one deflated entry "COPYING" (GPL-2 text)
DEFAULT_PAYLOAD = PayloadSpec(
    header_len=37,  # 30 [fixed] + 7 [filename] + 0 [extra]
    compressed_len=6806,  # 0x1a96
    uncompressed_len=18092,  # 0x46ac
)


def default_fixture_path() -> Path:
    return FIXTURES_DIR / DEFAULT_FIXTURE_NAME


def read_payload(path: Path, spec: PayloadSpec = DEFAULT_PAYLOAD) -> bytes:
    """
    Read the compressed span of `path`, skipping the container header.

    Raises ConfigurationError if the file is missing or shorter than `spec` requires.
    """
    path = Path(path)
    try:
        with path.open("rb") as f:
            skipped = len(f.read(spec.header_len))
            if skipped != spec.header_len:
                raise ConfigurationError(
                    "CFG-0031",
                    f"Error skipping header in input ZIP file: [{path.absolute()}],"
                    f" expected: [{spec.header_len}], skipped: [{skipped}]",
                )
            data = f.read(spec.compressed_len)
    except FileNotFoundError as e:
        raise ConfigurationError("CFG-0030", f"Input ZIP file not found: [{path.absolute()}]") from e
    except OSError as e:
        raise ConfigurationError("CFG-0031", f"Cannot read input ZIP file: [{path.absolute()}]: {e}") from e

    if len(data) != spec.compressed_len:
        raise ConfigurationError(
            "CFG-0031",
            f"Error reading data from input ZIP file: [{path.absolute()}],"
            f" expected: [{spec.compressed_len}], read: [{len(data)}]",
        )
    return data


def describe_zip_entry(path: Path, name: Optional[str] = None) -> PayloadSpec:
    """
    Derive a PayloadSpec for a deflated entry of a zip file.

    Defaults to the first entry. header_len is measured from the start of the
    file, so it covers earlier entries as well as the entry's own local header.
    """
    path = Path(path)
    try:
        with zipfile.ZipFile(path) as zf:
            infos = zf.infolist()
            if not infos:
                raise ConfigurationError("CFG-0031", f"zip file has no entries: [{path}]")
            if name is None:
                info = infos[0]
            else:
                try:
                    info = zf.getinfo(name)
                except KeyError:
                    raise ConfigurationError("CFG-0031", f"no entry '{name}' in zip file [{path}]") from None
            if info.compress_type != zipfile.ZIP_DEFLATED:
                raise ConfigurationError(
                    "CFG-0031", f"entry '{info.filename}' in [{path}] is not deflated"
                )
        with path.open("rb") as f:
            f.seek(info.header_offset)
            fields = _LOCAL_HEADER.unpack(f.read(_LOCAL_HEADER.size))
    except FileNotFoundError as e:
        raise ConfigurationError("CFG-0030", f"Input ZIP file not found: [{path.absolute()}]") from e
    except (OSError, zipfile.BadZipFile, struct.error) as e:
        raise ConfigurationError("CFG-0031", f"Cannot read zip file [{path}]: {e}") from e

    if fields[0] != _LOCAL_HEADER_MAGIC:
        raise ConfigurationError("CFG-0031", f"bad local header for '{info.filename}' in [{path}]")
    name_len, extra_len = fields[9], fields[10]
    return PayloadSpec(
        header_len=info.header_offset + _LOCAL_HEADER.size + name_len + extra_len,
        compressed_len=info.compress_size,
        uncompressed_len=info.file_size,
    )
