# SPDX-License-Identifier: LGPL-2.1-or-later

import argparse
import dataclasses
import enum
import functools
import logging
import os.path
import re
import textwrap
from collections.abc import Iterable, Iterator, Sequence
from pathlib import Path
from typing import Any, Callable, Generic, Optional, TypeVar, Union

from modsign.log import ARG_DEBUG, Style, die
from modsign.util import StrEnum, chdir, unique

__version__ = "1"

T = TypeVar("T")
SE = TypeVar("SE", bound=StrEnum)

ConfigParseCallback = Callable[[Optional[str], Optional[T]], Optional[T]]
ConfigDefaultCallback = Callable[[dict[str, Any]], T]

SYSTEM_CONFIG_DIRS = (Path("/usr/lib/modsign"), Path("/etc/modsign"))


class Verb(StrEnum):
    build = enum.auto()
    genkey = enum.auto()
    sign_nvidia = enum.auto()
    enroll = enum.auto()
    status = enum.auto()
    remove = enum.auto()
    test_load = enum.auto()
    summary = enum.auto()
    help = enum.auto()

    def is_operator_command(self) -> bool:
        return self in (Verb.enroll, Verb.status, Verb.remove, Verb.test_load)


class KeySource(StrEnum):
    auto = enum.auto()
    secret = enum.auto()
    build_arg = enum.auto()
    environment = enum.auto()
    persistent = enum.auto()
    generate = enum.auto()

    def is_injected(self) -> bool:
        return self in (KeySource.secret, KeySource.build_arg, KeySource.environment)


def try_parse_boolean(s: str) -> Optional[bool]:
    "Parse 1/true/yes/y/t/on as true and 0/false/no/n/f/off/None as false"

    s_l = s.lower()
    if s_l in {"1", "true", "yes", "y", "t", "on", "always"}:
        return True

    if s_l in {"0", "false", "no", "n", "f", "off", "never"}:
        return False

    return None


def parse_boolean(s: str) -> bool:
    value = try_parse_boolean(s)

    if value is None:
        die(f"Invalid boolean literal: {s!r}")

    return value


def parse_path(
    value: str,
    *,
    expanduser: bool = True,
    expandvars: bool = True,
) -> Path:
    if expandvars:
        value = os.path.expandvars(value)

    path = Path(value)

    if expanduser:
        path = path.expanduser()

    return path.absolute()


def config_parse_string(value: Optional[str], old: Optional[str]) -> Optional[str]:
    return value or None


def config_parse_boolean(value: Optional[str], old: Optional[bool]) -> Optional[bool]:
    if value is None:
        return False

    if not value:
        return None

    return parse_boolean(value)


def config_parse_number(value: Optional[str], old: Optional[int] = None) -> Optional[int]:
    if not value:
        return None

    try:
        return int(value)
    except ValueError:
        die(f"{value!r} is not a valid number")


def config_parse_valid_days(value: Optional[str], old: Optional[int]) -> Optional[int]:
    days = config_parse_number(value, old)
    if days is not None and days <= 0:
        die(f"Certificate validity must be a positive number of days, not {days}")

    return days


def config_parse_digest(value: Optional[str], old: Optional[str]) -> Optional[str]:
    if not value:
        return None

    if not re.match(r"sha(256|384|512)$", value):
        die(f"Unrecognized hash algorithm: {value}", hint="Use one of sha256, sha384 or sha512")

    return value


def is_valid_module_name(s: str) -> bool:
    return re.fullmatch(r"[A-Za-z0-9_-]+", s) is not None


def config_parse_module(value: Optional[str], old: Optional[str]) -> Optional[str]:
    if not value:
        return None

    if not is_valid_module_name(value):
        die(f"{value!r} is not a valid kernel module name")

    return value


def config_parse_base64(value: Optional[str], old: Optional[str]) -> Optional[str]:
    # Payloads are decoded when the key material is provisioned so that a malformed payload is reported
    # alongside the other missing or broken pieces.
    if not value:
        return None

    return "".join(value.split())


def make_enum_parser(type: type[SE]) -> Callable[[str], SE]:
    def parse_enum(value: str) -> SE:
        try:
            return type(value)
        except ValueError:
            die(f"'{value}' is not a valid {type.__name__}")

    return parse_enum


def config_make_enum_parser(type: type[SE]) -> ConfigParseCallback[SE]:
    def config_parse_enum(value: Optional[str], old: Optional[SE]) -> Optional[SE]:
        return make_enum_parser(type)(value) if value else None

    return config_parse_enum


def config_make_list_parser(
    *,
    delimiter: Optional[str] = None,
    parse: Callable[[str], T] = str,  # type: ignore # see mypy#3737
    reset: bool = True,
) -> ConfigParseCallback[list[T]]:
    def config_parse_list(value: Optional[str], old: Optional[list[T]]) -> Optional[list[T]]:
        new = old.copy() if old else []

        if value is None:
            return []

        # Empty strings reset the list.
        if delimiter:
            value = value.replace(delimiter, "\n")
        values = value.split("\n")
        if reset and len(values) == 1 and values[0] == "":
            return None

        new += [parse(v.strip()) for v in values if v.strip()]

        return new

    return config_parse_list


def config_make_path_parser(*, absolute: bool = False) -> ConfigParseCallback[Path]:
    def config_parse_path(value: Optional[str], old: Optional[Path]) -> Optional[Path]:
        if not value:
            return None

        if absolute and not Path(value).is_absolute():
            die(f"{value} must be an absolute path")

        return parse_path(value)

    return config_parse_path


@dataclasses.dataclass(frozen=True)
class ConfigSetting(Generic[T]):
    dest: str
    section: str
    parse: ConfigParseCallback[T] = config_parse_string  # type: ignore # see mypy#3737
    name: str = ""
    default: Optional[T] = None
    default_factory: Optional[ConfigDefaultCallback[T]] = None

    # settings for argparse
    short: Optional[str] = None
    long: str = ""
    choices: Optional[list[str]] = None
    metavar: Optional[str] = None
    nargs: Optional[str] = None
    const: Optional[Any] = None
    help: Optional[str] = None

    def __post_init__(self) -> None:
        if not self.name:
            object.__setattr__(self, "name", "".join(x.capitalize() for x in self.dest.split("_") if x))
        if not self.long:
            object.__setattr__(self, "long", f"--{self.dest.replace('_', '-')}")


@dataclasses.dataclass(frozen=True)
class Args:
    verb: Verb
    directory: Optional[Path]
    debug: bool
    force: bool

    @classmethod
    @functools.lru_cache(maxsize=1)
    def fields(cls) -> dict[str, dataclasses.Field[Any]]:
        return {f.name: f for f in dataclasses.fields(cls)}

    @classmethod
    def from_namespace(cls, ns: dict[str, Any]) -> "Args":
        return cls(**{k: v for k, v in ns.items() if k in cls.fields()})


@dataclasses.dataclass(frozen=True)
class Config:
    """Type-hinted storage for settings read from modsign.conf files and the command line.

    Paths that describe the system being provisioned (key directory, module tree, recipes) are host paths
    and are resolved below `root` when used. The module source, the scratch build directory and the
    secrets directory describe the environment modsign runs in and are used as-is.
    """

    kernel_version: Optional[str]
    kernel_source_search_root: Path
    packages: list[str]
    optional_packages: list[str]
    install_packages: bool

    module: str
    source: Path
    build_directory: Path
    module_options: list[str]
    autoload: bool

    key_source: KeySource
    key_directory: Path
    secrets_directory: Path
    signing_key_data: Optional[str]
    signing_certificate_data: Optional[str]
    signing_der_data: Optional[str]
    common_name: str
    organization: str
    valid_days: int
    temporary_key: bool
    digest: str
    sign_nvidia: bool

    root: Path
    recipes_directory: Path

    @classmethod
    @functools.lru_cache(maxsize=1)
    def fields(cls) -> dict[str, dataclasses.Field[Any]]:
        return {f.name: f for f in dataclasses.fields(cls)}

    @classmethod
    def from_namespace(cls, ns: dict[str, Any]) -> "Config":
        return cls(**{k: v for k, v in ns.items() if k in cls.fields()})

    @property
    def module_loaded_name(self) -> str:
        # The kernel reports loaded modules with underscores.
        return self.module.replace("-", "_")


SETTINGS: list[ConfigSetting[Any]] = [
    # Kernel section
    ConfigSetting(
        dest="kernel_version",
        section="Kernel",
        metavar="KVER",
        help="Kernel version to build against (defaults to the installed kernel package)",
    ),
    ConfigSetting(
        dest="kernel_source_search_root",
        section="Kernel",
        parse=config_make_path_parser(absolute=True),
        default=Path("/usr/src/kernels"),
        metavar="PATH",
        help="Directory containing kernel build trees",
    ),
    ConfigSetting(
        dest="packages",
        section="Kernel",
        parse=config_make_list_parser(delimiter=","),
        default=["kernel-devel", "kernel-headers", "gcc", "make", "kmod", "openssl"],
        metavar="PACKAGE",
        help="Packages required to build and sign kernel modules",
    ),
    ConfigSetting(
        dest="optional_packages",
        section="Kernel",
        parse=config_make_list_parser(delimiter=","),
        default=["mokutil"],
        metavar="PACKAGE",
        help="Packages to install if available",
    ),
    ConfigSetting(
        dest="install_packages",
        section="Kernel",
        parse=config_parse_boolean,
        default=True,
        nargs="?",
        const="yes",
        metavar="BOOL",
        help="Install the kernel development packages before building",
    ),
    # Module section
    ConfigSetting(
        dest="module",
        section="Module",
        parse=config_parse_module,
        default="hp-wmi",
        metavar="NAME",
        help="Name of the out-of-tree kernel module",
    ),
    ConfigSetting(
        dest="source",
        section="Module",
        parse=config_make_path_parser(),
        default_factory=lambda ns: Path(f"/ctx/{ns['module']}.c"),
        metavar="PATH",
        help="Module source file",
    ),
    ConfigSetting(
        dest="build_directory",
        section="Module",
        parse=config_make_path_parser(),
        default_factory=lambda ns: Path(f"/tmp/{ns['module']}-build"),
        metavar="PATH",
        help="Scratch directory the module is compiled in",
    ),
    ConfigSetting(
        dest="module_options",
        section="Module",
        parse=config_make_list_parser(delimiter=" "),
        default=[],
        metavar="OPTION",
        help="Module parameters written to modprobe.d",
    ),
    ConfigSetting(
        dest="autoload",
        section="Module",
        parse=config_parse_boolean,
        default=True,
        nargs="?",
        const="yes",
        metavar="BOOL",
        help="Load the module at boot",
    ),
    # Signing section
    ConfigSetting(
        dest="key_source",
        section="Signing",
        parse=config_make_enum_parser(KeySource),
        default=KeySource.auto,
        choices=KeySource.values(),
        help="Where to take the module signing key from",
    ),
    ConfigSetting(
        dest="key_directory",
        section="Signing",
        parse=config_make_path_parser(absolute=True),
        default=Path("/etc/pki/module-signing"),
        metavar="PATH",
        help="Directory the signing key pair is stored in",
    ),
    ConfigSetting(
        dest="secrets_directory",
        section="Signing",
        parse=config_make_path_parser(),
        default=Path("/run/secrets"),
        metavar="PATH",
        help="Directory build secrets are mounted in",
    ),
    ConfigSetting(
        dest="signing_key_data",
        section="Signing",
        parse=config_parse_base64,
        metavar="BASE64",
        help="Base64 encoded private key",
    ),
    ConfigSetting(
        dest="signing_certificate_data",
        section="Signing",
        parse=config_parse_base64,
        metavar="BASE64",
        help="Base64 encoded PEM certificate",
    ),
    ConfigSetting(
        dest="signing_der_data",
        section="Signing",
        parse=config_parse_base64,
        metavar="BASE64",
        help="Base64 encoded DER certificate",
    ),
    ConfigSetting(
        dest="common_name",
        section="Signing",
        default="HP WMI Module Signing Key",
        metavar="CN",
        help="Common name of generated certificates",
    ),
    ConfigSetting(
        dest="organization",
        section="Signing",
        default="Bazzite Omen",
        metavar="O",
        help="Organization of generated certificates",
    ),
    ConfigSetting(
        dest="valid_days",
        section="Signing",
        parse=config_parse_valid_days,
        default=3650,
        metavar="DAYS",
        help="Validity of generated certificates",
    ),
    ConfigSetting(
        dest="temporary_key",
        section="Signing",
        parse=config_parse_boolean,
        default=False,
        nargs="?",
        const="yes",
        metavar="BOOL",
        help="Stamp the build time into the common name of generated certificates",
    ),
    ConfigSetting(
        dest="digest",
        section="Signing",
        parse=config_parse_digest,
        default="sha256",
        metavar="ALGORITHM",
        help="Digest used when signing modules",
    ),
    ConfigSetting(
        dest="sign_nvidia",
        section="Signing",
        parse=config_parse_boolean,
        default=False,
        nargs="?",
        const="yes",
        metavar="BOOL",
        help="Also sign the NVIDIA kernel modules",
    ),
    # Install section
    ConfigSetting(
        dest="root",
        section="Install",
        parse=config_make_path_parser(),
        default=Path("/"),
        metavar="PATH",
        help="Root of the filesystem tree to provision",
    ),
    ConfigSetting(
        dest="recipes_directory",
        section="Install",
        parse=config_make_path_parser(absolute=True),
        default=Path("/usr/share/ublue-os/just"),
        metavar="PATH",
        help="Directory operator recipes are installed to",
    ),
]

SETTINGS_LOOKUP_BY_NAME = {s.name: s for s in SETTINGS}
SETTINGS_LOOKUP_BY_DEST = {s.dest: s for s in SETTINGS}
SETTINGS_LOOKUP_BY_OPTION = {s.long: s for s in SETTINGS}


def parse_ini(path: Path) -> Iterator[tuple[str, str, str]]:
    """
    We have our own parser instead of using configparser as the latter does not support specifying the same
    setting multiple times in the same configuration file.
    """
    section: Optional[str] = None
    setting: Optional[str] = None
    value: Optional[str] = None

    for line in textwrap.dedent(path.read_text()).splitlines():
        comment = line.find("#")
        if comment >= 0:
            line = line[:comment]

        if not line.strip():
            continue

        # If we have a section, setting and value, any line that's indented is considered part of the
        # setting's value.
        if section and setting and value is not None and line[0].isspace():
            value = f"{value}\n{line.strip()}"
            continue

        # So the line is not indented, that means we either found a new section or a new setting. Either way,
        # let's yield the previous setting and its value before parsing the new section/setting.
        if section and setting and value is not None:
            yield section, setting, value
            setting = value = None

        line = line.strip()

        if line[0] == "[":
            if line[-1] != "]":
                die(f"{line} is not a valid section")

            section = line[1:-1].strip()
            if not section:
                die("Section name cannot be empty or whitespace")

            continue

        if not section:
            die(f"Setting {line} is located outside of section")

        setting, delimiter, value = line.partition("=")
        if not delimiter:
            die(f"Setting {setting} must be followed by '='")
        if not setting:
            die(f"Missing setting name before '=' in {line}")

        setting = setting.strip()
        value = value.strip()

    # Make sure we yield any final setting and its value.
    if section and setting and value is not None:
        yield section, setting, value


class ConfigAction(argparse.Action):
    def __call__(
        self,
        parser: argparse.ArgumentParser,
        namespace: argparse.Namespace,
        values: Union[str, Sequence[Any], None],
        option_string: Optional[str] = None,
    ) -> None:
        assert option_string is not None

        s = SETTINGS_LOOKUP_BY_OPTION[self.option_strings[0]]

        if values is None or isinstance(values, str):
            values = [values]

        for v in values:
            assert isinstance(v, str) or v is None
            setattr(namespace, s.dest, s.parse(v, getattr(namespace, s.dest, None)))


def create_argument_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="modsign",
        description="Build, sign and install out-of-tree kernel modules",
        usage="\n  "
        + textwrap.dedent("""\
              modsign [options…] {b}build{e}
                modsign [options…] {b}genkey{e}
                modsign [options…] {b}sign-nvidia{e}
                modsign [options…] {b}enroll{e}
                modsign [options…] {b}status{e}
                modsign [options…] {b}remove{e}
                modsign [options…] {b}test-load{e}
                modsign [options…] {b}summary{e}
                modsign [options…] {b}help{e}
                modsign -h | --help
                modsign --version
        """).format(b=Style.bold, e=Style.reset),
        allow_abbrev=False,
        argument_default=argparse.SUPPRESS,
    )

    parser.add_argument(
        "--version",
        action="version",
        version="%(prog)s " + __version__,
        help=argparse.SUPPRESS,
    )
    parser.add_argument(
        "-f",
        "--force",
        action="store_true",
        default=False,
        help="Regenerate key material even if it already exists",
    )
    parser.add_argument(
        "-C",
        "--directory",
        type=parse_path,
        default=Path.cwd(),
        help="Read modsign.conf from the specified directory",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        default=False,
        help="Turn on debugging output",
    )
    parser.add_argument(
        "verb",
        type=Verb,
        choices=list(Verb),
        nargs="?",
        default=Verb.build,
        metavar="VERB",
        help=argparse.SUPPRESS,
    )

    last_section: Optional[str] = None

    for s in SETTINGS:
        if s.section != last_section:
            group = parser.add_argument_group(f"{s.section} configuration options")
            last_section = s.section

        opts = [s.short, s.long] if s.short else [s.long]

        group.add_argument(  # type: ignore
            *opts,
            dest=s.dest,
            choices=s.choices,
            metavar=s.metavar,
            nargs=s.nargs,  # type: ignore
            const=s.const,
            help=s.help,
            action=ConfigAction,
        )

    return parser


def config_files(directory: Optional[Path]) -> list[Path]:
    files = []

    for d in unique([*SYSTEM_CONFIG_DIRS, *([directory] if directory else [])]):
        if (p := d / "modsign.conf").is_file():
            files += [p]
        if (dropins := d / "modsign.conf.d").is_dir():
            files += sorted(p for p in dropins.iterdir() if p.suffix == ".conf" and p.is_file())

    return files


def parse_config_file(path: Path, namespace: dict[str, Any]) -> None:
    logging.debug(f"Including configuration file {path}")

    # Relative paths in configuration files are relative to the file they are specified in.
    with chdir(path.parent):
        for section, name, value in parse_ini(path):
            if not (s := SETTINGS_LOOKUP_BY_NAME.get(name)):
                logging.warning(f"{path}: Unknown setting {name}, ignoring")
                continue

            if s.section != section:
                logging.warning(f"{path}: Setting {name} should be configured in [{s.section}], not [{section}]")

            namespace[s.dest] = s.parse(value, namespace.get(s.dest))


def finalize_defaults(namespace: dict[str, Any]) -> None:
    for s in SETTINGS:
        if namespace.get(s.dest) is not None:
            continue

        if s.default_factory:
            namespace[s.dest] = s.default_factory(namespace)
        else:
            namespace[s.dest] = s.default


def parse_config(argv: Sequence[str] = ()) -> tuple[Args, Config]:
    # We keep two namespaces around, one for the settings specified on the CLI and one for the settings
    # specified in configuration files, so that settings specified on the CLI always override settings
    # specified in configuration files.
    cli: dict[str, Any] = {}
    ns = argparse.Namespace()
    ns.__dict__ = cli
    create_argument_parser().parse_args(list(argv), ns)

    args = Args.from_namespace(cli)

    if args.debug:
        ARG_DEBUG.set(args.debug)
        logging.getLogger().setLevel(logging.DEBUG)

    namespace: dict[str, Any] = {}

    for path in config_files(args.directory):
        parse_config_file(path, namespace)

    for dest, value in cli.items():
        if dest in SETTINGS_LOOKUP_BY_DEST:
            namespace[dest] = value

    finalize_defaults(namespace)

    return args, Config.from_namespace(namespace)


def yes_no(b: bool) -> str:
    return "yes" if b else "no"


def none_to_none(s: Optional[object]) -> str:
    return "none" if s is None else str(s)


def set_or_none(s: Optional[object]) -> str:
    return "none" if s is None else "(set)"


def line_join_list(array: Iterable[object]) -> str:
    return "\n                                     ".join(str(item) for item in array) if array else "none"


def bold(s: Any) -> str:
    return f"{Style.bold}{s}{Style.reset}"


def summary(config: Config) -> str:
    return f"""\
{bold(f"MODULE: {config.module}")}

    {bold("KERNEL")}:
                     Kernel Version: {none_to_none(config.kernel_version)}
          Kernel Source Search Root: {config.kernel_source_search_root}
                           Packages: {line_join_list(config.packages)}
                  Optional Packages: {line_join_list(config.optional_packages)}
                   Install Packages: {yes_no(config.install_packages)}

    {bold("MODULE")}:
                             Module: {config.module}
                             Source: {config.source}
                    Build Directory: {config.build_directory}
                     Module Options: {line_join_list(config.module_options)}
                           Autoload: {yes_no(config.autoload)}

    {bold("SIGNING")}:
                         Key Source: {config.key_source}
                      Key Directory: {config.key_directory}
                  Secrets Directory: {config.secrets_directory}
                   Signing Key Data: {set_or_none(config.signing_key_data)}
           Signing Certificate Data: {set_or_none(config.signing_certificate_data)}
                   Signing DER Data: {set_or_none(config.signing_der_data)}
                        Common Name: {config.common_name}
                       Organization: {config.organization}
                         Valid Days: {config.valid_days}
                      Temporary Key: {yes_no(config.temporary_key)}
                             Digest: {config.digest}
                        Sign NVIDIA: {yes_no(config.sign_nvidia)}

    {bold("INSTALL")}:
                               Root: {config.root}
                  Recipes Directory: {config.recipes_directory}
"""
