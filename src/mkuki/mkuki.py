#!/usr/bin/env python3
# SPDX-License-Identifier: LGPL-2.1-or-later
#
# This file is part of mkuki.
#
# mkuki is free software; you can redistribute it and/or modify it
# under the terms of the GNU Lesser General Public License as published by
# the Free Software Foundation; either version 2.1 of the License, or
# (at your option) any later version.
#
# mkuki is distributed in the hope that it will be useful, but
# WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE. See the GNU
# General Public License for more details.
#
# You should have received a copy of the GNU Lesser General Public License
# along with mkuki; If not, see <https://www.gnu.org/licenses/>.

# pylint: disable=import-outside-toplevel,consider-using-with,unused-argument
# pylint: disable=unnecessary-lambda-assignment

import argparse
import builtins
import configparser
import contextlib
import dataclasses
import fnmatch
import inspect
import itertools
import json
import os
import pprint
import pydoc
import re
import shlex
import shutil
import signal
import subprocess
import sys
import tempfile
import textwrap
from collections.abc import Iterator, Sequence
from hashlib import sha256
from pathlib import Path
from types import FrameType
from typing import (
    IO,
    Any,
    Callable,
    Literal,
    Optional,
    Union,
)

import pefile  # type: ignore

__version__ = '1.0.0'

PROG = 'mkuki'

EFI_ARCH_MAP = {
    # host_arch glob : [efi_arch, 32_bit_efi_arch if mixed mode is supported]
    'x86_64':        ['x64', 'ia32'],
    'i[3456]86':     ['ia32'],
    'aarch64':       ['aa64'],
    'armv[45678]*l': ['arm'],
    'loongarch32':   ['loongarch32'],
    'loongarch64':   ['loongarch64'],
    'riscv32':       ['riscv32'],
    'riscv64':       ['riscv64'],
}  # fmt: skip
EFI_ARCHES: list[str] = sum(EFI_ARCH_MAP.values(), [])

# Directories searched for linux<arch>.efi.stub, in order.
STUB_DIRS = ['/usr/lib/systemd/boot/efi', '/usr/lib/gummiboot', '/usr/lib/stubbyboot']

# Default configuration directories and file name.
# When the user does not specify one, the directories are searched in this order and the first file found is
# used.
DEFAULT_CONFIG_DIRS = ['/etc/kernel', '/run/kernel', '/usr/local/lib/kernel', '/usr/lib/kernel']
DEFAULT_CONFIG_FILE = 'mkuki.conf'

DEFAULT_CMDLINE = '/proc/cmdline'

# Load addresses of the embedded sections. Only .initrd is computed, see plan_initrd_address().
OSREL_ADDRESS = 0x20000
CMDLINE_ADDRESS = 0x30000
SPLASH_ADDRESS = 0x40000
KERNEL_BASE = 0x2000000

# The kernel may decompress or relocate itself beyond its on-disk size.
KERNEL_MARGIN = 0x1000000
PAGE_SIZE = 0x1000
MAX_ADDRESS = 2**64 - 1

# PE section RVAs are 32-bit.
MAX_PE_ADDRESS = 2**32 - 1

SECTION_ORDER = ('.osrel', '.cmdline', '.splash', '.linux', '.initrd')


class Style:
    bold = '\033[0;1;39m' if sys.stderr.isatty() else ''
    gray = '\033[0;38;5;245m' if sys.stderr.isatty() else ''
    red = '\033[31;1m' if sys.stderr.isatty() else ''
    yellow = '\033[33;1m' if sys.stderr.isatty() else ''
    reset = '\033[0m' if sys.stderr.isatty() else ''


class MkukiError(Exception):
    """Base class for all errors that terminate a run."""


class UsageError(MkukiError):
    pass


class ConfigFileError(MkukiError):
    pass


class UnknownArchitectureError(MkukiError):
    pass


class StubNotFoundError(MkukiError):
    pass


class PayloadReadError(MkukiError):
    def __init__(self, path: Union[str, Path], reason: Union[str, OSError]) -> None:
        if isinstance(reason, OSError):
            reason = reason.strerror or str(reason)
        super().__init__(f'Cannot read {path}: {reason}')
        self.path = Path(path)


class SizeOverflowError(MkukiError):
    pass


class AssemblyError(MkukiError):
    pass


class StubInvalidError(AssemblyError):
    pass


class OutputWriteError(AssemblyError):
    pass


def guess_efi_arch() -> str:
    arch = os.uname().machine

    for glob, mapping in EFI_ARCH_MAP.items():
        if fnmatch.fnmatch(arch, glob):
            efi_arch, *fallback = mapping
            break
    else:
        raise UnknownArchitectureError(f'Unsupported architecture {arch}, use --efi-arch= or --stub=')

    # This makes sense only on some architectures, but it also probably doesn't
    # hurt on others, so let's just apply the check everywhere.
    if fallback:
        fw_platform_size = Path('/sys/firmware/efi/fw_platform_size')
        try:
            size = fw_platform_size.read_text().strip()
        except FileNotFoundError:
            pass
        else:
            if int(size) == 32:
                efi_arch = fallback[0]

    return efi_arch


def find_stub(efi_arch: str, search_dirs: Optional[Sequence[Union[str, Path]]] = None) -> Path:
    search_dirs = search_dirs or STUB_DIRS

    for d in search_dirs:
        stub = Path(d) / f'linux{efi_arch}.efi.stub'
        if stub.exists():
            return stub

    dirs = ', '.join(str(d) for d in search_dirs)
    raise StubNotFoundError(f'No EFI stub for {efi_arch} found in {dirs}, use --stub=')


def page(text: str, enabled: Optional[bool]) -> None:
    if enabled:
        # Initialize less options from $SYSTEMD_LESS or provide a suitable fallback.
        os.environ['LESS'] = os.getenv('SYSTEMD_LESS', 'FRSXMK')
        pydoc.pager(text)
    else:
        print(text)


def shell_join(cmd: list[Union[str, Path]]) -> str:
    # TODO: drop in favour of shlex.join once shlex.join supports Path.
    return ' '.join(shlex.quote(str(x)) for x in cmd)


def round_up(x: int, blocksize: int = 4096) -> int:
    return (x + blocksize - 1) // blocksize * blocksize


def is_path_argument(value: str) -> bool:
    return value.startswith(('/', '.'))


def normalize_cmdline(value: str) -> str:
    """Turn a command line argument or file into the .cmdline section text.

    Literal text is used as is, with a newline appended. Anything starting
    with '/' or '.' is a file: lines starting with '#' are dropped and every
    run of newlines becomes a single space, so the result is one line.
    """
    if not is_path_argument(value):
        return value + '\n'

    try:
        text = Path(value).read_text()
    except OSError as e:
        raise ConfigFileError(f'Cannot read kernel command line from {value}: {e.strerror or e}') from e
    except UnicodeDecodeError as e:
        raise ConfigFileError(f'Kernel command line file {value} is not valid text: {e}') from e

    # Split on \n only, str.splitlines() also breaks lines at \f, \v and \x85
    lines = [line for line in re.split(r'(?<=\n)', text) if not line.startswith('#')]
    return re.sub(r'\n+', ' ', ''.join(lines))


def plan_initrd_address(kernel_size: int) -> int:
    """Return the load address of .initrd for a kernel of kernel_size bytes.

    The initrd starts on the first page strictly after the kernel base plus
    its size and safety margin, even if that sum is already page aligned.
    """
    if kernel_size < 0:
        raise SizeOverflowError(f'Invalid kernel size {kernel_size}')

    raw = KERNEL_BASE + KERNEL_MARGIN + kernel_size
    address = (raw // PAGE_SIZE + 1) * PAGE_SIZE

    if address > MAX_ADDRESS:
        raise SizeOverflowError(f'Kernel size {kernel_size} puts .initrd beyond the 64-bit address space')

    return address


def aggregate(microcode: Sequence[Path], initrd: Optional[Path]) -> bytes:
    """Concatenate microcode files and the initrd, in that order, byte for byte."""
    files = [*microcode, *([initrd] if initrd is not None else [])]

    seq = []
    for file in files:
        try:
            seq += [Path(file).read_bytes()]
        except OSError as e:
            raise PayloadReadError(file, e) from e

    return b''.join(seq)


@dataclasses.dataclass
class MkukiConfig:
    cmdline: Optional[str]
    efi_arch: Optional[str]
    initrd: Optional[Path]
    json: Union[Literal['pretty'], Literal['short'], Literal['off']]
    linux: Optional[Path]
    microcode: list[Path]
    os_release: Optional[Path]
    output: Optional[Path]
    section_tool: Optional[str]
    splash: Optional[Path]
    stub: Optional[Path]
    summary: bool
    tools: list[Path]
    verb: str
    files: list[Path] = dataclasses.field(default_factory=list)

    @classmethod
    def from_namespace(cls, ns: argparse.Namespace) -> 'MkukiConfig':
        return cls(**{k: v for k, v in vars(ns).items() if k in inspect.signature(cls).parameters})


@dataclasses.dataclass
class Section:
    name: str
    content: Path
    address: int
    tmpfile: Optional[IO[Any]] = None

    @classmethod
    def create(cls, name: str, contents: Union[str, bytes, Path], address: int) -> 'Section':
        if isinstance(contents, (str, bytes)):
            mode = 'wt' if isinstance(contents, str) else 'wb'
            tmp = tempfile.NamedTemporaryFile(mode=mode, prefix=f'tmp{name}')
            tmp.write(contents)
            tmp.flush()
            contents = Path(tmp.name)
        else:
            tmp = None

        return cls(name, contents, address, tmpfile=tmp)

    def size(self) -> int:
        try:
            return self.content.stat().st_size
        except OSError as e:
            raise PayloadReadError(self.content, e) from e

    def end(self) -> int:
        return self.address + self.size()

    def close(self) -> None:
        if self.tmpfile is not None:
            self.tmpfile.close()
            self.tmpfile = None


@dataclasses.dataclass
class UKI:
    executable: Path
    sections: list[Section] = dataclasses.field(default_factory=list, init=False)

    def __enter__(self) -> 'UKI':
        return self

    def __exit__(self, *exc_info: Any) -> None:
        for section in self.sections:
            section.close()

    def add_section(self, section: Section) -> None:
        try:
            if any(section.name == s.name for s in self.sections):
                raise AssemblyError(f'Duplicate section {section.name}')

            for s in self.sections:
                if section.address < s.end() and s.address < section.end():
                    raise AssemblyError(
                        f'Section {section.name} at 0x{section.address:x}-0x{section.end():x} overlaps '
                        f'{s.name} at 0x{s.address:x}-0x{s.end():x}'
                    )
        except AssemblyError:
            section.close()
            raise

        self.sections += [section]


def find_tool(
    name: str,
    fallback: Optional[str] = None,
    opts: Optional[MkukiConfig] = None,
    msg: str = 'Tool {name} not installed!',
) -> Union[str, Path]:
    if opts and opts.tools:
        for d in opts.tools:
            tool = d / name
            if tool.exists():
                return tool

    if shutil.which(name) is not None:
        return name

    if fallback is None:
        raise AssemblyError(msg.format(name=name))

    return fallback


def pe_strip_section_name(name: bytes) -> str:
    return name.rstrip(b'\x00').decode()


def load_stub(path: Path) -> pefile.PE:
    try:
        return pefile.PE(path, fast_load=True)
    except OSError as e:
        raise StubNotFoundError(f'Cannot open stub {path}: {e.strerror or e}') from e
    except pefile.PEFormatError as e:
        raise StubInvalidError(f'Stub {path} is not a valid PE image: {e}') from e


def check_stub_layout(pe: pefile.PE, uki: UKI) -> None:
    if not pe.sections:
        raise StubInvalidError(f'Stub {uki.executable} has no sections')

    stub_end = max((s.VirtualAddress + s.Misc_VirtualSize for s in pe.sections), default=0)
    lowest = min(s.address for s in uki.sections)
    if stub_end > lowest:
        raise StubInvalidError(
            f'Stub {uki.executable} occupies addresses up to 0x{stub_end:x}, '
            f'which overlaps the embedded sections starting at 0x{lowest:x}'
        )

    stub_names = {pe_strip_section_name(s.Name) for s in pe.sections}
    for section in uki.sections:
        if section.name in stub_names:
            raise StubInvalidError(f'Stub {uki.executable} already contains a {section.name} section')
        if section.end() > MAX_PE_ADDRESS:
            raise AssemblyError(f'Section {section.name} ends at 0x{section.end():x}, beyond the PE address space')


def pe_add_sections(uki: UKI) -> pefile.PE:
    pe = load_stub(uki.executable)

    # Old stubs do not have the symbol/string table stripped, even though image files should not have one.
    if symbol_table := pe.FILE_HEADER.PointerToSymbolTable:
        symbol_table_size = 18 * pe.FILE_HEADER.NumberOfSymbols
        if string_table_size := pe.get_dword_from_offset(symbol_table + symbol_table_size):
            symbol_table_size += string_table_size

        # Let's be safe and only strip it if it's at the end of the file.
        if symbol_table + symbol_table_size == len(pe.__data__):
            pe.__data__ = pe.__data__[:symbol_table]
            pe.FILE_HEADER.PointerToSymbolTable = 0
            pe.FILE_HEADER.NumberOfSymbols = 0
            pe.FILE_HEADER.IMAGE_FILE_LOCAL_SYMS_STRIPPED = True

    # Old stubs might have been stripped, leading to unaligned raw data values, so let's fix them up here.
    # pylint: disable=no-member

    for i, section in enumerate(pe.sections):
        oldp = section.PointerToRawData
        oldsz = section.SizeOfRawData
        section.PointerToRawData = round_up(oldp, pe.OPTIONAL_HEADER.FileAlignment)
        section.SizeOfRawData = round_up(oldsz, pe.OPTIONAL_HEADER.FileAlignment)
        padp = section.PointerToRawData - oldp
        padsz = section.SizeOfRawData - oldsz

        for later_section in pe.sections[i + 1 :]:
            later_section.PointerToRawData += padp + padsz

        pe.__data__ = (
            pe.__data__[:oldp]
            + bytes(padp)
            + pe.__data__[oldp : oldp + oldsz]
            + bytes(padsz)
            + pe.__data__[oldp + oldsz :]
        )

    # We might not have any space to add new sections. Let's try our best to make some space by padding the
    # SizeOfHeaders to a multiple of the file alignment. This is safe because the first section's data starts
    # at a multiple of the file alignment, so all space before that is unused.
    pe.OPTIONAL_HEADER.SizeOfHeaders = round_up(
        pe.OPTIONAL_HEADER.SizeOfHeaders, pe.OPTIONAL_HEADER.FileAlignment
    )
    pe = pefile.PE(data=pe.write(), fast_load=True)

    warnings = pe.get_warnings()
    if warnings:
        raise StubInvalidError(f'pefile warnings treated as errors: {warnings}')

    security = pe.OPTIONAL_HEADER.DATA_DIRECTORY[pefile.DIRECTORY_ENTRY['IMAGE_DIRECTORY_ENTRY_SECURITY']]
    if security.VirtualAddress != 0:
        # We could strip the signatures, but why would anyone sign the stub?
        raise StubInvalidError('Stub image is signed, refusing.')

    check_stub_layout(pe, uki)

    for section in uki.sections:
        new_section = pefile.SectionStructure(pe.__IMAGE_SECTION_HEADER_format__, pe=pe)
        new_section.__unpack__(b'\0' * new_section.sizeof())

        offset = pe.sections[-1].get_file_offset() + new_section.sizeof()
        if offset + new_section.sizeof() > pe.OPTIONAL_HEADER.SizeOfHeaders:
            raise StubInvalidError(f'Not enough header space to add section {section.name}.')

        try:
            data = section.content.read_bytes()
        except OSError as e:
            raise PayloadReadError(section.content, e) from e

        new_section.set_file_offset(offset)
        new_section.Name = section.name.encode()
        new_section.Misc_VirtualSize = len(data)
        # Non-stripped stubs might still have an unaligned symbol table at the end, making their size
        # unaligned, so we make sure to explicitly pad the pointer to new sections to an aligned offset.
        new_section.PointerToRawData = round_up(len(pe.__data__), pe.OPTIONAL_HEADER.FileAlignment)
        new_section.SizeOfRawData = round_up(len(data), pe.OPTIONAL_HEADER.FileAlignment)
        new_section.VirtualAddress = section.address

        new_section.IMAGE_SCN_MEM_READ = True
        if section.name == '.linux':
            # Old kernels that use EFI handover protocol will be executed inline.
            new_section.IMAGE_SCN_CNT_CODE = True
        else:
            new_section.IMAGE_SCN_CNT_INITIALIZED_DATA = True

        pe.__data__ = (
            pe.__data__[:]
            + bytes(new_section.PointerToRawData - len(pe.__data__))
            + data
            + bytes(new_section.SizeOfRawData - len(data))
        )

        pe.FILE_HEADER.NumberOfSections += 1
        pe.OPTIONAL_HEADER.SizeOfInitializedData += new_section.Misc_VirtualSize
        pe.__structures__.append(new_section)
        pe.sections.append(new_section)

    pe.OPTIONAL_HEADER.CheckSum = 0
    pe.OPTIONAL_HEADER.SizeOfImage = round_up(
        pe.sections[-1].VirtualAddress + pe.sections[-1].Misc_VirtualSize,
        pe.OPTIONAL_HEADER.SectionAlignment,
    )

    return pe


@contextlib.contextmanager
def atomic_output(output: Path) -> Iterator[Path]:
    """Yield a temporary path next to output, renamed over output on success."""
    try:
        fd, name = tempfile.mkstemp(dir=output.parent, prefix=f'.#{output.name}.')
    except OSError as e:
        raise OutputWriteError(f'Cannot create {output}: {e.strerror or e}') from e
    os.close(fd)
    tmp = Path(name)

    try:
        yield tmp

        # mkstemp gives us 0600, let's apply the usual executable permissions
        os.umask(umask := os.umask(0))
        os.chmod(tmp, 0o777 & ~umask)
        os.replace(tmp, output)
    except OSError as e:
        tmp.unlink(missing_ok=True)
        raise OutputWriteError(f'Cannot write {output}: {e.strerror or e}') from e
    except BaseException:
        tmp.unlink(missing_ok=True)
        raise


class SectionTool:
    @staticmethod
    def add_sections(uki: UKI, output: Path, opts: Optional[MkukiConfig] = None) -> None:
        raise NotImplementedError()

    @staticmethod
    def from_string(name: str) -> type['SectionTool']:
        if name == 'pefile':
            return PefileTool
        elif name == 'objcopy':
            return ObjcopyTool
        else:
            raise UsageError(f'Invalid section tool: {name!r}')


class PefileTool(SectionTool):
    @staticmethod
    def add_sections(uki: UKI, output: Path, opts: Optional[MkukiConfig] = None) -> None:
        pe = pe_add_sections(uki)

        with atomic_output(output) as tmp:
            pe.write(os.fspath(tmp))


class ObjcopyTool(SectionTool):
    @staticmethod
    def add_sections(uki: UKI, output: Path, opts: Optional[MkukiConfig] = None) -> None:
        tool = find_tool('objcopy', opts=opts, msg='objcopy, required for --section-tool=objcopy, is not installed')

        # objcopy wants absolute VMAs, the layout is expressed relative to the image base.
        pe = load_stub(uki.executable)
        image_base = pe.OPTIONAL_HEADER.ImageBase
        check_stub_layout(pe, uki)
        pe.close()

        with atomic_output(output) as tmp:
            cmd = [
                tool,
                *itertools.chain.from_iterable(
                    ('--add-section',        f'{s.name}={s.content}',
                     '--change-section-vma', f'{s.name}=0x{image_base + s.address:x}')
                    for s in uki.sections
                ),
                uki.executable,
                tmp,
            ]  # fmt: skip

            print('+', shell_join(cmd), file=sys.stderr)
            try:
                subprocess.run(cmd, check=True, stdout=subprocess.DEVNULL, stderr=subprocess.PIPE, text=True)
            except subprocess.CalledProcessError as e:
                raise StubInvalidError(f'objcopy failed on {uki.executable}: {e.stderr.strip()}') from e


def check_splash(filename: Optional[Path]) -> None:
    if filename is None:
        return

    # import is delayed, to avoid import when the splash image is not used
    try:
        from PIL import Image
    except ImportError:
        return

    try:
        with Image.open(filename, formats=['BMP']) as img:
            print(f'Splash image {filename} is {img.width}×{img.height} pixels', file=sys.stderr)
    except (OSError, ValueError, Image.DecompressionBombError) as e:
        raise ConfigFileError(f'Splash image {filename} is not a usable BMP image: {e}') from e


def check_input(path: Optional[Path], error: type[MkukiError], what: str) -> None:
    if path is None:
        return

    # Open file to check that we can read it
    try:
        path.open('rb').close()
    except OSError as e:
        raise error(f'Cannot open {what} {path}: {e.strerror or e}') from e


def check_payloads(opts: Union[MkukiConfig, argparse.Namespace]) -> None:
    check_input(opts.linux, UsageError, 'kernel image')
    for ucode in opts.microcode:
        check_input(ucode, UsageError, 'microcode file')
    check_input(opts.initrd, UsageError, 'initrd image')


def check_inputs(opts: MkukiConfig) -> None:
    check_payloads(opts)

    if opts.cmdline is not None and is_path_argument(opts.cmdline):
        check_input(Path(opts.cmdline), ConfigFileError, 'kernel command line file')
    check_input(opts.os_release, ConfigFileError, 'os-release file')
    check_input(opts.splash, ConfigFileError, 'splash image')
    check_input(opts.stub, StubNotFoundError, 'EFI stub')

    # An empty splash is a no-op, there is nothing to check
    if opts.splash is not None and opts.splash.stat().st_size > 0:
        check_splash(opts.splash)


def make_uki(opts: MkukiConfig) -> None:
    assert opts.linux is not None
    assert opts.output is not None
    assert opts.stub is not None
    assert opts.cmdline is not None
    assert opts.os_release is not None

    section_tool = SectionTool.from_string(opts.section_tool or 'pefile')

    with UKI(opts.stub) as uki:
        cmdline = normalize_cmdline(opts.cmdline)

        try:
            kernel_size = opts.linux.stat().st_size
        except OSError as e:
            raise PayloadReadError(opts.linux, e) from e

        initrd_address = plan_initrd_address(kernel_size)
        print(f'Kernel is {kernel_size} bytes, placing .initrd at 0x{initrd_address:x}', file=sys.stderr)

        initrd = aggregate(opts.microcode, opts.initrd)

        sections = [
            # name,      address,         content
            ('.osrel',   OSREL_ADDRESS,   opts.os_release),
            ('.cmdline', CMDLINE_ADDRESS, cmdline),
            ('.splash',  SPLASH_ADDRESS,  opts.splash or b''),
            ('.linux',   KERNEL_BASE,     opts.linux),
            ('.initrd',  initrd_address,  initrd),
        ]  # fmt: skip
        assert tuple(name for name, _, _ in sections) == SECTION_ORDER

        for name, address, content in sections:
            uki.add_section(Section.create(name, content, address))

        section_tool.add_sections(uki, opts.output, opts)

    print(f'Wrote {opts.output}', file=sys.stderr)


def inspect_section(section: pefile.SectionStructure) -> tuple[str, dict[str, Union[int, str]]]:
    name = pe_strip_section_name(section.Name)

    size = section.Misc_VirtualSize
    data = section.get_data(length=size)

    return name, {
        'address': section.VirtualAddress,
        'size': size,
        'sha256': sha256(data).hexdigest(),
    }


def inspect_sections(opts: MkukiConfig) -> None:
    indent = 4 if opts.json == 'pretty' else None

    for file in opts.files:
        try:
            pe = pefile.PE(file, fast_load=True)
        except OSError as e:
            raise UsageError(f'Cannot open {file}: {e.strerror or e}') from e
        except pefile.PEFormatError as e:
            raise UsageError(f'{file} is not a valid PE file: {e}') from e

        descs = dict(inspect_section(section) for section in pe.sections)

        if opts.json != 'off':
            json.dump(descs, sys.stdout, indent=indent)
            print()
            continue

        for name, desc in descs.items():
            print(f"{name}:\n  address: 0x{desc['address']:x}\n  size: {desc['size']} bytes\n  sha256: {desc['sha256']}")


@dataclasses.dataclass(frozen=True)
class ConfigItem:
    @staticmethod
    def config_list_prepend(
        namespace: argparse.Namespace,
        dest: str,
        value: Any,
    ) -> None:
        "Prepend value to namespace.<dest>"

        old = getattr(namespace, dest, [])
        if old is None:
            old = []
        setattr(namespace, dest, value + old)

    @staticmethod
    def config_set_if_unset(
        namespace: argparse.Namespace,
        dest: str,
        value: Any,
    ) -> None:
        "Set namespace.<dest> to value only if it was None"

        if getattr(namespace, dest) is None:
            setattr(namespace, dest, value)

    # arguments for argparse.ArgumentParser.add_argument()
    name: Union[str, tuple[str, str]]
    dest: Optional[str] = None
    metavar: Optional[str] = None
    type: Optional[Callable[[str], Any]] = None
    nargs: Optional[str] = None
    action: Optional[Union[str, Callable[[str], Any], builtins.type[argparse.Action]]] = None
    default: Any = None
    version: Optional[str] = None
    choices: Optional[tuple[str, ...]] = None
    help: Optional[str] = None

    # metadata for config file parsing
    config_key: Optional[str] = None
    config_push: Callable[[argparse.Namespace, str, Any], None] = config_set_if_unset

    def _names(self) -> tuple[str, ...]:
        return self.name if isinstance(self.name, tuple) else (self.name,)

    def argparse_dest(self) -> str:
        # It'd be nice if argparse exported this, but I don't see that in the API
        if self.dest:
            return self.dest
        return self._names()[0].lstrip('-').replace('-', '_')

    def add_to(self, parser: argparse.ArgumentParser) -> None:
        kwargs = {
            key: val
            for key in dataclasses.asdict(self)
            if (key not in ('name', 'config_key', 'config_push') and (val := getattr(self, key)) is not None)
        }
        args = self._names()
        parser.add_argument(*args, **kwargs)

    def apply_config(
        self,
        namespace: argparse.Namespace,
        section: str,
        key: str,
        value: Any,
    ) -> None:
        assert f'{section}/{key}' == self.config_key
        dest = self.argparse_dest()

        conv: Callable[[str], Any]
        if self.type:
            conv = self.type
        else:
            conv = lambda s: s  # noqa: E731

        # --microcode is the only option with multiple args on the command line
        # and a space-separated list in the config file.
        if self.action == 'append':
            value = [conv(v) for v in value.split()]
        else:
            value = conv(value)

        self.config_push(namespace, dest, value)

    def config_example(self) -> tuple[Optional[str], Optional[str], Optional[str]]:
        if not self.config_key:
            return None, None, None
        section_name, key = self.config_key.split('/', 1)
        if self.choices:
            value = '|'.join(self.choices)
        else:
            value = self.metavar or self.argparse_dest().upper()
        return (section_name, key, value)


CONFIG_ITEMS = [
    ConfigItem(
        'files',
        metavar='FILE',
        nargs='*',
        help=argparse.SUPPRESS,
    ),
    ConfigItem(
        ('--version', '-V'),
        action='version',
        version=f'{PROG} {__version__}',
    ),
    ConfigItem(
        '--summary',
        help='print parsed config and exit',
        action='store_true',
    ),
    ConfigItem(
        '--config',
        metavar='PATH',
        type=Path,
        help='configuration file',
    ),
    ConfigItem(
        ('--cmdline', '-c'),
        metavar='TEXT|PATH',
        help='kernel command line, or a file to read it from if it starts with / or . [.cmdline section]',
        config_key='UKI/Cmdline',
    ),
    ConfigItem(
        ('--os-release', '-r'),
        metavar='PATH',
        type=Path,
        help='path to os-release file [.osrel section]',
        config_key='UKI/OSRelease',
    ),
    ConfigItem(
        ('--splash', '-s'),
        metavar='BMP',
        type=Path,
        help='splash image bitmap file [.splash section]',
        config_key='UKI/Splash',
    ),
    ConfigItem(
        ('--stub', '-S'),
        type=Path,
        help='path to the EFI stub file [.text,.data,… sections]',
        config_key='UKI/Stub',
    ),
    ConfigItem(
        ('--output', '-o'),
        type=Path,
        help='output file path, defaults to KERNEL.efi',
    ),
    ConfigItem(
        '--microcode',
        metavar='UCODE',
        type=Path,
        action='append',
        default=[],
        help='microcode file, placed before the positional ones [part of .initrd section]',
        config_key='UKI/Microcode',
        config_push=ConfigItem.config_list_prepend,
    ),
    ConfigItem(
        '--efi-arch',
        metavar='ARCH',
        choices=('ia32', 'x64', 'arm', 'aa64', 'riscv32', 'riscv64', 'loongarch32', 'loongarch64'),
        help='target EFI architecture, used to find the stub',
        config_key='UKI/EFIArch',
    ),
    ConfigItem(
        '--section-tool',
        choices=('pefile', 'objcopy'),
        help='how sections are added to the stub, defaults to pefile',
        config_key='UKI/SectionTool',
    ),
    ConfigItem(
        '--tools',
        type=Path,
        action='append',
        help='Directories to search for tools (objcopy, …)',
    ),
    ConfigItem(
        '--inspect',
        action='store_true',
        help='print the section table of the given files instead of building',
    ),
    ConfigItem(
        '--json',
        choices=('pretty', 'short', 'off'),
        default='off',
        help='generate JSON output with --inspect',
    ),
]

CONFIGFILE_ITEMS = {item.config_key: item for item in CONFIG_ITEMS if item.config_key}


def apply_config(namespace: argparse.Namespace, filename: Union[str, Path, None] = None) -> None:
    if filename is None:
        if namespace.config:
            # Config set by the user, use that.
            filename = namespace.config
            print(f'Using config file: {filename}', file=sys.stderr)
        else:
            # Try to look for a config file then use the first one found.
            for config_dir in DEFAULT_CONFIG_DIRS:
                filename = Path(config_dir) / DEFAULT_CONFIG_FILE
                if filename.is_file():
                    # Found a config file, use it.
                    print(f'Using found config file: {filename}', file=sys.stderr)
                    break
            else:
                # No config file specified or found, nothing to do.
                return

    cp = configparser.ConfigParser(
        comment_prefixes='#',
        inline_comment_prefixes='#',
        delimiters='=',
        empty_lines_in_values=False,
        interpolation=None,
        strict=False,
    )
    # Do not make keys lowercase
    cp.optionxform = lambda option: option  # type: ignore

    # The API is not great.
    try:
        read = cp.read(filename)
    except configparser.Error as e:
        raise ConfigFileError(f'Failed to parse {filename}: {e}') from e
    if not read:
        raise ConfigFileError(f'Failed to read {filename}')

    for section_name, section in cp.items():
        for key, value in section.items():
            if item := CONFIGFILE_ITEMS.get(f'{section_name}/{key}'):
                item.apply_config(namespace, section_name, key, value)
            else:
                print(f'Unknown config setting [{section_name}] {key}=', file=sys.stderr)


def config_example() -> Iterator[str]:
    prev_section: Optional[str] = None
    for item in CONFIG_ITEMS:
        section, key, value = item.config_example()
        if section:
            if prev_section != section:
                if prev_section:
                    yield ''
                yield f'[{section}]'
                prev_section = section
            yield f'{key} = {value}'


class PagerHelpAction(argparse._HelpAction):  # pylint: disable=protected-access
    def __call__(
        self,
        parser: argparse.ArgumentParser,
        namespace: argparse.Namespace,
        values: Union[str, Sequence[Any], None] = None,
        option_string: Optional[str] = None,
    ) -> None:
        page(parser.format_help(), True)
        parser.exit()


def create_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog=PROG,
        description='Build EFI Unified Kernel Images',
        usage='\n  '
        + textwrap.dedent("""\
          {b}mkuki{e} [options…] KERNEL [MICROCODE…] [INITRD]
            {b}mkuki{e} --inspect FILE… [--json=pretty|short]
        """).format(b=Style.bold, e=Style.reset),
        allow_abbrev=False,
        add_help=False,
        epilog='\n  '.join(('config file:', *config_example())),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    for item in CONFIG_ITEMS:
        item.add_to(p)

    # Suppress printing of usage synopsis on errors
    p.error = lambda message: p.exit(2, f'{p.prog}: error: {message}\n')  # type: ignore

    # Make --help paged
    p.add_argument(
        '-h', '--help',
        action=PagerHelpAction,
        help='show this help message and exit',
    )  # fmt: skip

    return p


def finalize_options(opts: argparse.Namespace) -> None:
    opts.linux = None
    opts.initrd = None
    files = [Path(f) for f in opts.files]

    if opts.inspect:
        opts.verb = 'inspect'
        opts.files = files
        if not opts.files:
            raise UsageError('file(s) to inspect must be specified')
        if len(opts.files) > 1 and opts.json != 'off':
            # We could allow this in the future, but we need to figure out the right structure
            raise UsageError('JSON output is not allowed with multiple files')
        return

    # mkuki KERNEL [MICROCODE…] INITRD: the last file after the kernel is the initrd,
    # anything between the two is microcode.
    opts.verb = 'build'
    opts.files = []
    if not files:
        raise UsageError('the kernel image must be specified')
    opts.linux, *rest = files
    if rest:
        opts.initrd = rest.pop()
    opts.microcode = (opts.microcode or []) + rest

    if opts.cmdline is None:
        opts.cmdline = DEFAULT_CMDLINE

    if opts.os_release is None:
        p = Path('/etc/os-release')
        if not p.exists():
            p = Path('/usr/lib/os-release')
        opts.os_release = p

    if opts.section_tool is None:
        opts.section_tool = 'pefile'

    if opts.stub is None:
        # A missing kernel or initrd is reported before a missing stub
        check_payloads(opts)
        if opts.efi_arch is None:
            opts.efi_arch = guess_efi_arch()
        opts.stub = find_stub(opts.efi_arch)

    if opts.output is None:
        opts.output = Path(f'{opts.linux}.efi')


def parse_args(args: Optional[list[str]] = None) -> argparse.Namespace:
    opts = create_parser().parse_args(args)
    apply_config(opts)
    finalize_options(opts)
    return opts


def onsignal(signum: int, frame: Optional[FrameType]) -> None:
    # Unwind through the normal path so temporary files are removed
    raise KeyboardInterrupt()


def main(args: Optional[list[str]] = None) -> None:
    signal.signal(signal.SIGINT, onsignal)
    signal.signal(signal.SIGTERM, onsignal)
    signal.signal(signal.SIGHUP, onsignal)

    try:
        opts = MkukiConfig.from_namespace(parse_args(args))
        if opts.summary:
            # TODO: replace pprint() with some fancy formatting.
            pprint.pprint(vars(opts))
        elif opts.verb == 'inspect':
            inspect_sections(opts)
        elif opts.verb == 'build':
            check_inputs(opts)
            make_uki(opts)
        else:
            assert False
    except MkukiError as e:
        print(f'{Style.red}{PROG}: error: {e}{Style.reset}', file=sys.stderr)
        sys.exit(2)
    except KeyboardInterrupt:
        print(f'{Style.red}{PROG}: interrupted{Style.reset}', file=sys.stderr)
        sys.exit(2)


if __name__ == '__main__':
    main()
