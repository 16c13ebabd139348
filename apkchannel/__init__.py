#!/usr/bin/python3
# encoding: utf-8
# SPDX-FileCopyrightText: 2024 FC (Fay) Stegerman <flx@obfusk.net>
# SPDX-License-Identifier: GPL-3.0-or-later

"""
read/write android apk channel metadata without breaking signatures

apkchannel embeds a small identifier (a "channel", e.g. the name of the app
store a build is distributed through) in an APK without touching the bytes
covered by its signature, and reads it back.  Three schemes are supported:

* block: an ID-value pair in the APK Signing Block (v2/v3 signatures);
* comment: a trailing record in the ZIP EOCD comment (v1 signatures);
* file: an empty META-INF/channel_<channel> ZIP entry (v1 signatures).


CLI
===

$ apkchannel read [OPTIONS] APK
$ apkchannel write [OPTIONS] INPUT_APK OUTPUT_APK CHANNEL
$ apkchannel inspect APK

The following environment variables can be set to override the default
behaviour:

* set APKCHANNEL_SCHEME to block, comment, or file to select the scheme
* set APKCHANNEL_SKIP_REALIGNMENT=1 to skip realignment of ZIP entries


API
===

>> from apkchannel import do_read, do_write, do_inspect
>> do_read(apk, scheme=None)
>> do_write(input_apk, output_apk, channel, scheme=BLOCK)
>> do_inspect(apk)

Use scheme=None with do_read() to try all schemes (block, comment, file).

The following global variable (which defaults to False) can be set to
override the default behaviour:

* set skip_realignment=True to skip realignment of ZIP entries
"""

import contextlib
import os
import shutil
import struct
import sys
import tempfile

from collections import namedtuple
from typing import Any, BinaryIO, Dict, Iterator, List, Literal, Optional, Tuple

__version__ = "0.1.0"
NAME = "apkchannel"

Scheme = Literal["block", "comment", "file"]
DateTime = Tuple[int, int, int, int, int, int]

SCHEMES: Tuple[Scheme, Scheme, Scheme] = ("block", "comment", "file")
BLOCK, COMMENT, FILE = SCHEMES
AUTO = "auto"

ANDROID_MANIFEST = "AndroidManifest.xml"
FILE_PREFIX = "META-INF/channel_"

DATETIMEZERO: DateTime = (1980, 0, 0, 0, 0, 0)

################################################################################
#
# https://en.wikipedia.org/wiki/ZIP_(file_format)
# https://source.android.com/docs/security/features/apksigning/v2#apk-signing-block-format
#
# =================================
# | Contents of ZIP entries       |
# =================================
# | APK Signing Block             |
# | ----------------------------- |
# | | size (w/o this) uint64 LE | |
# | | ID-value pairs            | |
# | | | size (w/o this) u64 LE| | |
# | | | ID              u32 LE| | |
# | | | value (size - 4 bytes)| | |
# | | size (again)    uint64 LE | |
# | | "APK Sig Block 42" (16B)  | |
# | ----------------------------- |
# =================================
# | ZIP Central Directory         |
# =================================
# | ZIP End of Central Directory  |
# | ----------------------------- |
# | | 0x06054b50 ( 4B)          | |
# | | ...        ( 8B)          | |
# | | CD Size    ( 4B)          | |
# | | CD Offset  ( 4B)          | |
# | | Comment Length (2B)       | |
# | | Comment    (0-65535B)     | |
# | | | ...                   | | |
# | | | channel (n bytes)     | | |  <- comment scheme
# | | | n          u16 LE     | | |
# | | | 0x06054b51 u32 LE     | | |
# | ----------------------------- |
# =================================
#
################################################################################

EOCD_SIG = b"\x50\x4b\x05\x06"
EOCD_MIN_SIZE = 22
EOCD_MAX_SIZE = EOCD_MIN_SIZE + 0xFFFF
EOCD_ENTRIES_OFFSET = 10
EOCD_CD_SIZE_OFFSET = 12
EOCD_CD_OFFSET_OFFSET = 16
EOCD_COMMENT_LENGTH_OFFSET = 20

APK_SIG_BLOCK_MAGIC = b"APK Sig Block 42"
APK_SIG_BLOCK_MIN_SIZE = 32                     # size + size + magic
APK_SIG_BLOCK_FOOTER_SIZE = 24                  # size + magic

CHANNEL_MAGIC = int.from_bytes(EOCD_SIG, "little") + 1
CHANNEL_RECORD_SIZE = 6                         # u16 length + u32 magic
MAX_BLOCK_CHANNEL_SIZE = 0x7FFFFFFF

ZIP64_LIMIT = 0xFFFFFFFF
ZIP_FILECOUNT_LIMIT = 0xFFFF

skip_realignment = False    # skip realignment of ZIP entries in write_channel_file()


class APKChannelError(Exception):
    """Base class for errors."""


class ZipError(APKChannelError):
    """Something wrong with ZIP file."""


class APKSigningBlockError(APKChannelError):
    """Something wrong with the APK Signing Block."""


class NoAPKSigningBlock(APKSigningBlockError):
    """APK Signing Block Missing."""


class InvalidChannelError(APKChannelError, ValueError):
    """Channel can't be embedded."""


class ChannelDecodeError(APKChannelError):
    """Embedded channel is not valid UTF-8."""


class EOCD(namedtuple("EOCD", ("offset", "data"))):
    r"""
    End of central directory record: absolute offset and raw bytes (including
    the comment).

    >>> eocd = EOCD(100, EOCD_SIG + bytes(6) + b"\x02\x00" + bytes(4)
    ...             + b"\x2a\x00\x00\x00" + b"\x03\x00" + b"foo")
    >>> eocd.entries, eocd.cd_size, eocd.cd_offset, eocd.comment
    (2, 0, 42, b'foo')

    """
    __slots__ = ()

    @property
    def entries(self) -> int:
        return read_u16(self.data, EOCD_ENTRIES_OFFSET)

    @property
    def cd_size(self) -> int:
        return read_u32(self.data, EOCD_CD_SIZE_OFFSET)

    @property
    def cd_offset(self) -> int:
        return read_u32(self.data, EOCD_CD_OFFSET_OFFSET)

    @property
    def comment(self) -> bytes:
        return self.data[EOCD_MIN_SIZE:]


class SigningBlock(namedtuple("SigningBlock", ("offset", "data"))):
    """APK Signing Block: absolute offset and raw bytes."""
    __slots__ = ()

    @property
    def size(self) -> int:
        return read_u64(self.data, 0)


class CDEntry(namedtuple("CDEntry", ("filename", "flag_bits", "compress_type", "date_time",
                                     "compress_size", "header_offset", "cdfh"))):
    """Central directory entry: decoded fields plus the raw CD file header."""
    __slots__ = ()


Codec = namedtuple("Codec", ("read", "write"))


################################################################################
#
# bounds-checked little-endian reads
#
################################################################################

def read_bytes(data: bytes, offset: int, length: int) -> bytes:
    r"""
    Read length bytes at offset from data.

    Raises ZipError when the read would go out of bounds.

    >>> read_bytes(b"abcdef", 2, 3)
    b'cde'
    >>> try:
    ...     read_bytes(b"abcdef", 4, 3)
    ... except ZipError as e:
    ...     print(e)
    Read of 3 bytes at offset 4 out of bounds

    """
    if offset < 0 or length < 0 or offset + length > len(data):
        raise ZipError(f"Read of {length} bytes at offset {offset} out of bounds")
    return data[offset:offset + length]


def read_u16(data: bytes, offset: int) -> int:
    r"""
    >>> read_u16(b"\x00\x34\x12", 1) == 0x1234
    True
    """
    return int.from_bytes(read_bytes(data, offset, 2), "little")


def read_u32(data: bytes, offset: int) -> int:
    r"""
    >>> hex(read_u32(EOCD_SIG, 0))
    '0x6054b50'
    """
    return int.from_bytes(read_bytes(data, offset, 4), "little")


def read_u64(data: bytes, offset: int) -> int:
    return int.from_bytes(read_bytes(data, offset, 8), "little")


def read_at(fh: BinaryIO, offset: int, length: int) -> bytes:
    """
    Read exactly length bytes at absolute offset from file.

    Raises ZipError on EOF.
    """
    if offset < 0 or length < 0:
        raise ZipError(f"Read of {length} bytes at offset {offset} out of bounds")
    fh.seek(offset)
    data = fh.read(length)
    if len(data) != length:
        raise ZipError("Unexpected EOF")
    return data


def copy_bytes(fhi: BinaryIO, fho: BinaryIO, size: int, blocksize: int = 4096) -> None:
    r"""
    Copy exactly size bytes from fhi (at its current position) to fho.

    >>> import io
    >>> fhi, fho = io.BytesIO(b"0123456789"), io.BytesIO()
    >>> copy_bytes(fhi, fho, 7, blocksize=3)
    >>> fho.getvalue(), fhi.tell()
    (b'0123456', 7)
    >>> try:
    ...     copy_bytes(fhi, fho, 4)
    ... except ZipError as e:
    ...     print(e)
    Unexpected EOF

    """
    while size > 0:
        data = fhi.read(min(size, blocksize))
        if not data:
            break
        size -= len(data)
        fho.write(data)
    if size != 0:
        raise ZipError("Unexpected EOF")


################################################################################
#
# locators
#
################################################################################

def find_eocd(apkfile: str) -> Optional[EOCD]:
    r"""
    Find the end of central directory record of a ZIP file.

    Returns None if the file is too small or has no (valid) EOCD.

    >>> import zipfile
    >>> with tempfile.TemporaryDirectory() as tmpdir:
    ...     apk = os.path.join(tmpdir, "test.apk")
    ...     with zipfile.ZipFile(apk, "w") as zf:
    ...         zf.writestr(ANDROID_MANIFEST, "")
    ...         zf.comment = b"PK\x05\x06 fake"
    ...     eocd = find_eocd(apk)
    ...     eocd.offset == os.path.getsize(apk) - 22 - 9
    True
    >>> eocd.entries, eocd.comment
    (1, b'PK\x05\x06 fake')

    """
    with open(apkfile, "rb") as fh:
        return _find_eocd(fh)


def _find_eocd(fh: BinaryIO) -> Optional[EOCD]:
    size = fh.seek(0, os.SEEK_END)
    if size < EOCD_MIN_SIZE:
        return None
    count = min(size, EOCD_MAX_SIZE)
    data = read_at(fh, size - count, count)
    # candidates start at count - EOCD_MIN_SIZE at the latest
    end = count - EOCD_MIN_SIZE + len(EOCD_SIG)
    while (pos := data.rfind(EOCD_SIG, 0, end)) != -1:
        if read_u16(data, pos + EOCD_COMMENT_LENGTH_OFFSET) == count - pos - EOCD_MIN_SIZE:
            return EOCD(size - count + pos, data[pos:])
        end = pos + len(EOCD_SIG) - 1
    return None


def _cd_offset(eocd: EOCD) -> int:
    cd_offset = eocd.cd_offset
    if cd_offset > eocd.offset:
        raise ZipError("Central directory offset beyond EOCD")
    return cd_offset


def find_signing_block(apkfile: str) -> Optional[SigningBlock]:
    """
    Find the APK Signing Block of an APK.

    Returns None if the APK has no EOCD or no APK Signing Block; raises
    APKSigningBlockError if the block is malformed.
    """
    with open(apkfile, "rb") as fh:
        if (eocd := _find_eocd(fh)) is None:
            return None
        return _find_signing_block(fh, _cd_offset(eocd))


def _find_signing_block(fh: BinaryIO, cd_offset: int) -> Optional[SigningBlock]:
    if cd_offset < APK_SIG_BLOCK_MIN_SIZE:
        return None
    if read_at(fh, cd_offset - 16, 16) != APK_SIG_BLOCK_MAGIC:
        return None
    sb_size2 = read_u64(read_at(fh, cd_offset - APK_SIG_BLOCK_FOOTER_SIZE, 8), 0)
    if not (APK_SIG_BLOCK_MIN_SIZE - 8 <= sb_size2 <= cd_offset - 8):
        raise APKSigningBlockError("APK Signing Block size out of range")
    sb_offset = cd_offset - sb_size2 - 8
    sb_size1 = read_u64(read_at(fh, sb_offset, 8), 0)
    if sb_size1 != sb_size2:
        raise APKSigningBlockError("APK Signing Block sizes not equal")
    return SigningBlock(sb_offset, read_at(fh, sb_offset, sb_size2 + 8))


def signing_block_pairs(sig_block: bytes) -> Iterator[Tuple[int, int, int]]:
    r"""
    Iterate over the ID-value pairs of an APK Signing Block.

    Yields (offset, length, pair_id) with offset relative to the start of the
    block and length excluding the 8-byte length field itself; raises
    APKSigningBlockError for pairs that don't fit in the block.

    >>> pair = struct.pack("<QI", 7, 0x01) + b"abc"
    >>> size = struct.pack("<Q", len(pair) + 24)
    >>> block = size + pair + size + APK_SIG_BLOCK_MAGIC
    >>> list(signing_block_pairs(block))
    [(8, 7, 1)]
    >>> try:
    ...     list(signing_block_pairs(size + pair[:-1] + size + APK_SIG_BLOCK_MAGIC))
    ... except APKSigningBlockError as e:
    ...     print(e)
    Invalid ID-value pair length at offset 8

    """
    limit = len(sig_block) - APK_SIG_BLOCK_FOOTER_SIZE
    pos = 8
    while pos < limit:
        if pos + 12 > limit:
            raise APKSigningBlockError(f"Truncated ID-value pair at offset {pos}")
        length = read_u64(sig_block, pos)
        if length < 4 or pos + 8 + length > limit:
            raise APKSigningBlockError(f"Invalid ID-value pair length at offset {pos}")
        yield pos, length, read_u32(sig_block, pos + 8)
        pos += 8 + length


################################################################################
#
# channel encoding
#
################################################################################

def _encode_channel(channel: str) -> bytes:
    if not channel:
        raise InvalidChannelError("Channel must not be empty")
    return channel.encode()


def _decode_channel(data: bytes) -> Optional[str]:
    try:
        return data.decode() or None
    except UnicodeDecodeError as e:
        raise ChannelDecodeError(f"Channel is not valid UTF-8: {e}")    # pylint: disable=W0707


@contextlib.contextmanager
def _atomic_output(output_apk: str, mode_from: Optional[str] = None) -> Iterator[BinaryIO]:
    """
    Write to a temporary file next to output_apk, then rename it to output_apk.

    The temporary file is removed if anything fails.
    """
    fd, tmp = tempfile.mkstemp(prefix=f".{NAME}-", suffix=".tmp",
                               dir=os.path.dirname(os.path.abspath(output_apk)))
    try:
        with os.fdopen(fd, "w+b") as fho:
            yield fho
        if mode_from is not None:
            shutil.copymode(mode_from, tmp)
        os.replace(tmp, output_apk)
    except BaseException:
        with contextlib.suppress(FileNotFoundError):
            os.unlink(tmp)
        raise


################################################################################
#
# block scheme (v2/v3): ID-value pair in the APK Signing Block
#
################################################################################

def read_channel_block(apkfile: str) -> Optional[str]:
    """
    Read channel from the APK Signing Block.

    Returns None if there is no APK Signing Block or no channel pair.
    """
    if (sb := find_signing_block(apkfile)) is None:
        return None
    for pos, length, pair_id in signing_block_pairs(sb.data):
        if pair_id == CHANNEL_MAGIC:
            return _decode_channel(sb.data[pos + 12:pos + 8 + length])
    return None


def add_channel_pair(sig_block: bytes, value: bytes) -> bytes:
    r"""
    Return a copy of the APK Signing Block with a channel pair appended after
    the existing pairs (replacing any existing channel pair) and both size
    fields updated.

    >>> pair = struct.pack("<QI", 7, 0x01) + b"abc"
    >>> size = struct.pack("<Q", len(pair) + 24)
    >>> block = size + pair + size + APK_SIG_BLOCK_MAGIC
    >>> new_block = add_channel_pair(block, b"pgyer")
    >>> len(new_block) - len(block)
    17
    >>> [(pos, length, hex(pid)) for pos, length, pid in signing_block_pairs(new_block)]
    [(8, 7, '0x1'), (23, 9, '0x6054b51')]
    >>> read_u64(new_block, 0) == read_u64(new_block, len(new_block) - 24) == 64 - 8
    True
    >>> add_channel_pair(new_block, b"pgyer") == new_block
    True

    """
    body = b"".join(sig_block[pos:pos + 8 + length]
                    for pos, length, pair_id in signing_block_pairs(sig_block)
                    if pair_id != CHANNEL_MAGIC)
    pair = struct.pack("<QI", 4 + len(value), CHANNEL_MAGIC) + value
    size = struct.pack("<Q", len(body) + len(pair) + APK_SIG_BLOCK_FOOTER_SIZE)
    return size + body + pair + size + APK_SIG_BLOCK_MAGIC


def _adjust_cd_offset(eocd_data: bytes, cd_offset: int) -> bytes:
    return (eocd_data[:EOCD_CD_OFFSET_OFFSET] + int.to_bytes(cd_offset, 4, "little")
            + eocd_data[EOCD_CD_OFFSET_OFFSET + 4:])


def write_channel_block(apkfile: str, output_apk: str, channel: str) -> None:
    """
    Write APK with channel added to the APK Signing Block.

    Only the APK Signing Block and the central directory offset in the EOCD
    change; everything else is copied as-is.  Raises NoAPKSigningBlock if the
    APK isn't signed with a v2/v3 signature.
    """
    value = _encode_channel(channel)
    if len(value) > MAX_BLOCK_CHANNEL_SIZE:
        raise InvalidChannelError("Channel too long for APK Signing Block")
    with open(apkfile, "rb") as fhi:
        if (eocd := _find_eocd(fhi)) is None:
            raise ZipError("Expected end of central directory record (EOCD)")
        cd_offset = _cd_offset(eocd)
        if (sb := _find_signing_block(fhi, cd_offset)) is None:
            raise NoAPKSigningBlock("No APK Signing Block")
        new_sb = add_channel_pair(sb.data, value)
        new_cd_offset = cd_offset + len(new_sb) - len(sb.data)
        if new_cd_offset > ZIP64_LIMIT:
            raise ZipError("Central directory offset requires ZIP64")
        new_eocd = _adjust_cd_offset(eocd.data, new_cd_offset)
        with _atomic_output(output_apk, apkfile) as fho:
            fhi.seek(0)
            copy_bytes(fhi, fho, sb.offset)
            fho.write(new_sb)
            fhi.seek(cd_offset)
            copy_bytes(fhi, fho, eocd.offset - cd_offset)
            fho.write(new_eocd)


################################################################################
#
# comment scheme (v1): record at the end of the EOCD comment
#
################################################################################

def read_channel_comment(apkfile: str) -> Optional[str]:
    """
    Read channel from the trailing [channel][u16 length][u32 magic] record.

    Returns None if the file doesn't end with the channel magic.
    """
    with open(apkfile, "rb") as fh:
        size = fh.seek(0, os.SEEK_END)
        if size < CHANNEL_RECORD_SIZE:
            return None
        record = read_at(fh, size - CHANNEL_RECORD_SIZE, CHANNEL_RECORD_SIZE)
        if read_u32(record, 2) != CHANNEL_MAGIC:
            return None
        if (length := read_u16(record, 0)) == 0:
            return None
        if length > size - CHANNEL_RECORD_SIZE:
            raise ZipError("Channel length out of range")
        return _decode_channel(read_at(fh, size - CHANNEL_RECORD_SIZE - length, length))


def write_channel_comment(apkfile: str, output_apk: str, channel: str) -> None:
    """
    Write APK with channel appended to the EOCD comment.

    Only the EOCD changes.  The existing comment is kept as is (including any
    earlier channel record); the last record appended is the one read back.
    Raises InvalidChannelError if the comment would exceed 65535 bytes.
    """
    value = _encode_channel(channel)
    with open(apkfile, "rb") as fhi:
        if (eocd := _find_eocd(fhi)) is None:
            raise ZipError("Expected end of central directory record (EOCD)")
        comment = eocd.comment
        comment_length = len(comment) + len(value) + CHANNEL_RECORD_SIZE
        if comment_length > 0xFFFF:
            raise InvalidChannelError("Channel too long for ZIP comment")
        new_eocd = (eocd.data[:EOCD_COMMENT_LENGTH_OFFSET]
                    + struct.pack("<H", comment_length) + comment
                    + value + struct.pack("<HI", len(value), CHANNEL_MAGIC))
        with _atomic_output(output_apk, apkfile) as fho:
            fhi.seek(0)
            copy_bytes(fhi, fho, eocd.offset)
            fho.write(new_eocd)


################################################################################
#
# file scheme (v1): empty META-INF/channel_<channel> ZIP entry
#
################################################################################

def is_channel_entry(filename: str) -> bool:
    """
    Returns whether filename is a channel entry.

    >>> is_channel_entry("META-INF/channel_pgyer")
    True
    >>> is_channel_entry("META-INF/MANIFEST.MF")
    False

    """
    return filename.startswith(FILE_PREFIX)


def read_channel_file(apkfile: str) -> Optional[str]:
    """
    Read channel from the name of the first channel entry.

    Returns None if the file isn't a ZIP file or has no channel entry.
    """
    with open(apkfile, "rb") as fh:
        if (eocd := _find_eocd(fh)) is None:
            return None
        for entry in _read_cd_entries(fh, eocd):
            if is_channel_entry(entry.filename):
                return entry.filename[len(FILE_PREFIX):] or None
    return None


def _dos_date_time(date_time: DateTime) -> Tuple[int, int]:
    """
    >>> _dos_date_time(DATETIMEZERO)
    (0, 0)
    >>> _dos_date_time((2017, 5, 15, 11, 28, 40))
    (19119, 23444)
    """
    year, month, day, hour, minute, second = date_time
    return (year - 1980) << 9 | month << 5 | day, hour << 11 | minute << 5 | second // 2


def _date_time(mdate: int, mtime: int) -> DateTime:
    """
    >>> _date_time(19119, 23444)
    (2017, 5, 15, 11, 28, 40)
    """
    return ((mdate >> 9) + 1980, mdate >> 5 & 0xF, mdate & 0x1F,
            mtime >> 11, mtime >> 5 & 0x3F, (mtime & 0x1F) * 2)


def _channel_entry_headers(name: bytes, date_time: DateTime) -> Tuple[bytes, bytes]:
    flag_bits = 0 if name.isascii() else 0x800
    mdate, mtime = _dos_date_time(date_time)
    # extract_version flag_bits compress_type mtime mdate crc32 sizes len(name) len(extra)
    lfh = b"\x50\x4b\x03\x04" + struct.pack(
        "<HHHHHLLLHH", 20, flag_bits, 0, mtime, mdate, 0, 0, 0, len(name), 0) + name
    # create_version/system extract_version ... disk attrs header_offset
    cdfh = b"\x50\x4b\x01\x02" + struct.pack(
        "<BBBBHHHHLLLHHHHHLL", 20, 0, 20, 0, flag_bits, 0, mtime, mdate, 0, 0, 0,
        len(name), 0, 0, 0, 0, 0, 0) + name
    return lfh, cdfh


def _read_lfh(fh: BinaryIO) -> Tuple[bytes, int, int]:
    hdr = fh.read(30)
    if len(hdr) != 30 or hdr[:4] != b"\x50\x4b\x03\x04":
        raise ZipError("Expected local file header signature")
    n, m = struct.unpack("<HH", hdr[26:30])
    return hdr + fh.read(n + m), n, m


def _read_cdfh(fh: BinaryIO) -> Tuple[bytes, int, int, int]:
    hdr = fh.read(46)
    if len(hdr) != 46 or hdr[:4] != b"\x50\x4b\x01\x02":
        raise ZipError("Expected central directory file header signature")
    n, m, k = struct.unpack("<HHH", hdr[28:34])
    return hdr + fh.read(n + m + k), n, m, k


def _read_cd_entries(fh: BinaryIO, eocd: EOCD) -> List[CDEntry]:
    """
    Read the central directory the EOCD points to (eocd.entries records).

    Raises ZipError if the central directory is malformed or runs into the
    EOCD.
    """
    entries = []
    fh.seek(_cd_offset(eocd))
    for _ in range(eocd.entries):
        hdr, n, _m, _k = _read_cdfh(fh)
        if fh.tell() > eocd.offset:
            raise ZipError("Central directory overlaps EOCD")
        flag_bits, compress_type, mtime, mdate = struct.unpack("<HHHH", hdr[8:16])
        raw_name = hdr[46:46 + n]
        try:
            filename = raw_name.decode("utf-8" if flag_bits & 0x800 else "cp437")
        except UnicodeDecodeError as e:
            raise ZipError(f"Invalid ZIP entry name: {raw_name!r}") from e
        entries.append(CDEntry(filename, flag_bits, compress_type, _date_time(mdate, mtime),
                               read_u32(hdr, 20), read_u32(hdr, 42), hdr))
    return entries


def _adjust_offset(hdr: bytes, offset: int) -> bytes:
    return hdr[:42] + int.to_bytes(offset, 4, "little") + hdr[46:]


def _read_data_descriptor(fh: BinaryIO, entry: CDEntry) -> Optional[bytes]:
    if entry.flag_bits & 0x08:
        data_descriptor = fh.read(12)
        if data_descriptor[:4] == b"\x50\x4b\x07\x08":
            data_descriptor += fh.read(4)
        return data_descriptor
    return None


# NB: doesn't sync local & CD headers!
def _realign_zip_entry(entry: CDEntry, hdr: bytes, n: int, m: int, off_o: int) -> bytes:
    align = 4096 if entry.filename.endswith(".so") else 4
    old_off = 30 + n + m + entry.header_offset
    new_off = 30 + n + m + off_o
    old_xtr = hdr[30 + n:30 + n + m]
    new_xtr = b""
    while len(old_xtr) >= 4:
        hdr_id, size = struct.unpack("<HH", old_xtr[:4])
        if size > len(old_xtr) - 4:
            break
        if not (hdr_id == 0 and size == 0):
            if hdr_id == 0xd935:
                if size >= 2:
                    align = int.from_bytes(old_xtr[4:6], "little")
            else:
                new_xtr += old_xtr[:size + 4]
        old_xtr = old_xtr[size + 4:]
    if old_off % align == 0 and new_off % align != 0:
        pad = (align - (new_off - m + len(new_xtr) + 6) % align) % align
        xtr = new_xtr + struct.pack("<HHH", 0xd935, 2 + pad, align) + pad * b"\x00"
        hdr = hdr[:28] + int.to_bytes(len(xtr), 2, "little") + hdr[30:30 + n] + xtr
    return hdr


# FIXME: support zip64?
def write_channel_file(apkfile: str, output_apk: str, channel: str, *,
                       realign: Optional[bool] = None) -> None:
    """
    Write APK with an empty META-INF/channel_<channel> entry prepended.

    Copies all other entries (local headers and compressed data) as-is,
    replacing any existing channel entries; the timestamp is taken from
    AndroidManifest.xml.  Any APK Signing Block is dropped, since the new
    entry invalidates it.

    Set skip_realignment=True (or use realign=False) to skip realignment of
    STORED entries.
    """
    if realign is None:
        realign = not skip_realignment
    value = _encode_channel(channel)
    if any(c in value for c in b"\x00\n\r/"):
        raise InvalidChannelError("NUL, LF, CR, or '/' in channel")
    name = FILE_PREFIX.encode() + value
    if len(name) > 0xFFFF:
        raise InvalidChannelError("Channel too long for ZIP entry name")
    offsets: Dict[str, int] = {}
    with open(apkfile, "rb") as fhi:
        if (eocd := _find_eocd(fhi)) is None:
            raise ZipError("Expected end of central directory record (EOCD)")
        cd_offset_in = _cd_offset(eocd)
        entries_in = _read_cd_entries(fhi, eocd)
        ref = next((entry for entry in entries_in if entry.filename == ANDROID_MANIFEST),
                   entries_in[0] if entries_in else None)
        lfh, cdfh = _channel_entry_headers(name, ref.date_time if ref else DATETIMEZERO)
        with _atomic_output(output_apk, apkfile) as fho:
            fho.write(lfh)
            fhi.seek(0)
            for entry in sorted(entries_in, key=lambda entry: entry.header_offset):
                off_i = fhi.tell()
                if entry.header_offset >= cd_offset_in:
                    raise ZipError(f"Local header beyond central directory: {entry.filename!r}")
                if entry.header_offset > off_i:
                    # copy extra bytes
                    copy_bytes(fhi, fho, entry.header_offset - off_i)
                elif entry.header_offset < off_i:
                    raise ZipError(f"Overlapping ZIP entry: {entry.filename!r}")
                off_o = fho.tell()
                hdr, n, m = _read_lfh(fhi)
                if skip := is_channel_entry(entry.filename):
                    fhi.seek(entry.compress_size, os.SEEK_CUR)
                else:
                    if entry.filename in offsets:
                        raise ZipError(f"Duplicate ZIP entry: {entry.filename!r}")
                    offsets[entry.filename] = off_o
                    if realign and entry.compress_type == 0 and off_o != entry.header_offset:
                        hdr = _realign_zip_entry(entry, hdr, n, m, off_o)
                    fho.write(hdr)
                    copy_bytes(fhi, fho, entry.compress_size)
                if (data_descriptor := _read_data_descriptor(fhi, entry)) and not skip:
                    fho.write(data_descriptor)
            cd_offset = fho.tell()
            fho.write(cdfh)
            for entry in entries_in:
                if not is_channel_entry(entry.filename):
                    fho.write(_adjust_offset(entry.cdfh, offsets[entry.filename]))
            eocd_offset = fho.tell()
            entries = len(offsets) + 1
            if entries > ZIP_FILECOUNT_LIMIT or eocd_offset > ZIP64_LIMIT:
                raise ZipError("Too many entries or too large for ZIP without ZIP64")
            fho.write(eocd.data[:8] + struct.pack("<HHLL", entries, entries,
                                                  eocd_offset - cd_offset, cd_offset)
                      + eocd.data[20:])


################################################################################
#
# API
#
################################################################################

CODECS: Dict[str, Codec] = {
    BLOCK: Codec(read_channel_block, write_channel_block),
    COMMENT: Codec(read_channel_comment, write_channel_comment),
    FILE: Codec(read_channel_file, write_channel_file),
}


def codec(scheme: str) -> Codec:
    r"""
    Returns the (read, write) functions for scheme.

    >>> codec(BLOCK).read is read_channel_block
    True
    >>> try:
    ...     codec("v3")
    ... except ValueError as e:
    ...     print(e)
    expected block, comment, or file

    """
    try:
        return CODECS[scheme]
    except KeyError:
        raise ValueError("expected block, comment, or file")     # pylint: disable=W0707


def do_read(apkfile: str, scheme: Optional[str] = None) -> Optional[str]:
    """
    Read channel from apkfile using scheme.

    With scheme=None, tries the block, comment, and file schemes (in that
    order) and returns the first channel found.  Returns None if there is no
    channel.
    """
    for s in (SCHEMES if scheme is None else (scheme,)):
        if (channel := codec(s).read(apkfile)) is not None:
            return channel
    return None


def do_write(apkfile: str, output_apk: str, channel: str, scheme: str = BLOCK) -> None:
    """
    Write apkfile with channel embedded using scheme to output_apk.

    output_apk is replaced atomically and may be the same file as apkfile;
    nothing is written if an error occurs.
    """
    codec(scheme).write(apkfile, output_apk, channel)


def do_inspect(apkfile: str) -> Dict[str, Any]:
    """
    Describe the EOCD and APK Signing Block (if any) of apkfile.

    Raises ZipError if apkfile has no EOCD.
    """
    with open(apkfile, "rb") as fh:
        if (eocd := _find_eocd(fh)) is None:
            raise ZipError("Expected end of central directory record (EOCD)")
        cd_offset = _cd_offset(eocd)
        sb = _find_signing_block(fh, cd_offset)
    info: Dict[str, Any] = dict(
        eocd_offset=eocd.offset, cd_offset=cd_offset, cd_size=eocd.cd_size,
        entries=eocd.entries, comment_length=len(eocd.comment), signing_block=None,
    )
    if sb is not None:
        pairs: List[Dict[str, int]] = [
            dict(offset=sb.offset + pos, id=pair_id, length=length)
            for pos, length, pair_id in signing_block_pairs(sb.data)
        ]
        info["signing_block"] = dict(offset=sb.offset, size=sb.size, pairs=pairs)
    return info


def make_cli() -> Any:
    """Returns the click command group; requires click."""

    import click

    @click.group(help="""
        apkchannel - read/write android apk channel metadata
    """)
    @click.version_option(__version__)
    def cli() -> None:
        pass

    @cli.command(help="""
        Read channel from APK.
    """)
    @click.option("--scheme", type=click.Choice((AUTO,) + SCHEMES), default=AUTO,
                  show_default=True, envvar="APKCHANNEL_SCHEME",
                  help="Where to look for the channel.")
    @click.argument("apk", type=click.Path(exists=True, dir_okay=False))
    def read(apk: str, scheme: str) -> None:
        channel = do_read(apk, None if scheme == AUTO else scheme)
        if channel is None:
            click.echo("No channel found.", err=True)
            sys.exit(1)
        click.echo(channel)

    @cli.command(help="""
        Write copy of INPUT_APK with CHANNEL embedded to OUTPUT_APK.
    """)
    @click.option("--scheme", type=click.Choice(SCHEMES), default=BLOCK,
                  show_default=True, envvar="APKCHANNEL_SCHEME",
                  help="Where to embed the channel.")
    @click.argument("input_apk", type=click.Path(exists=True, dir_okay=False))
    @click.argument("output_apk", type=click.Path(dir_okay=False))
    @click.argument("channel")
    def write(input_apk: str, output_apk: str, channel: str, scheme: str) -> None:
        do_write(input_apk, output_apk, channel, scheme)

    @cli.command(help="""
        Show the EOCD and APK Signing Block of APK.
    """)
    @click.argument("apk", type=click.Path(exists=True, dir_okay=False))
    def inspect(apk: str) -> None:
        info = do_inspect(apk)
        click.echo(f"EOCD offset:           {info['eocd_offset']}")
        click.echo(f"CD offset:             {info['cd_offset']}")
        click.echo(f"CD size:               {info['cd_size']}")
        click.echo(f"entries:               {info['entries']}")
        click.echo(f"comment length:        {info['comment_length']}")
        if (sb := info["signing_block"]) is None:
            click.echo("APK Signing Block:     none")
            return
        click.echo(f"APK Signing Block:     offset={sb['offset']} size={sb['size']}")
        for pair in sb["pairs"]:
            tag = " (channel)" if pair["id"] == CHANNEL_MAGIC else ""
            click.echo(f"  pair 0x{pair['id']:08x}: offset={pair['offset']} "
                       f"length={pair['length']}{tag}")

    return cli


def main() -> None:
    """CLI; requires click."""

    global skip_realignment
    skip_realignment = os.environ.get("APKCHANNEL_SKIP_REALIGNMENT") in ("1", "yes", "true")

    import click

    try:
        make_cli()(prog_name=NAME)
    except APKChannelError as e:
        click.echo(f"Error: {e}.", err=True)
        sys.exit(1)


if __name__ == "__main__":
    main()

# vim: set tw=80 sw=4 sts=4 et fdm=marker :
