#!/usr/bin/env python3
"""
check_nutanix_capacity.py

Icinga/Nagios plugin: query a Nutanix cluster over SNMP and check either
the storage pool usage or the cluster resilience capacity against
warning/critical percentages.

Examples
--------
# 1) Storage pool, SNMP v2c, with perfdata:
./check_nutanix_capacity.py -H 10.10.42.10 -C public -2 -o pool -w 80% -c 90% -f

# 2) Cluster resilience, SNMPv3 AuthPriv:
./check_nutanix_capacity.py -H cluster.example.net -l monitor -x authpass \
    -X privpass -L sha,aes -o cluster -w 60 -c 80

Exit codes follow the plugin API: 0 OK, 1 WARNING, 2 CRITICAL, 3 UNKNOWN.
Usage percent is computed as used / (total - used) * 100, the same figure
the original Perl plugin reports.
"""

import argparse
import asyncio
import logging
import re
import sys
from dataclasses import dataclass
from typing import Dict, List, Optional, Union

from pysnmp.error import PySnmpError
from pysnmp.hlapi.v3arch.asyncio import (
    CommunityData,
    ContextData,
    ObjectIdentity,
    ObjectType,
    SnmpEngine,
    UdpTransportTarget,
    UsmUserData,
    USM_AUTH_HMAC96_MD5,
    USM_AUTH_HMAC96_SHA,
    USM_AUTH_HMAC128_SHA224,
    USM_AUTH_HMAC192_SHA256,
    USM_AUTH_HMAC256_SHA384,
    USM_AUTH_HMAC384_SHA512,
    USM_PRIV_CBC56_DES,
    USM_PRIV_CBC168_3DES,
    USM_PRIV_CFB128_AES,
    USM_PRIV_CFB192_AES,
    USM_PRIV_CFB256_AES,
    get_cmd,
)
from pysnmp.proto.rfc1905 import EndOfMibView, NoSuchInstance, NoSuchObject


VERSION = "0.9"

OK = 0
WARNING = 1
CRITICAL = 2
UNKNOWN = 3

# Watchdog base in seconds; set to None to fall back on --timeout + 10
GLOBAL_TIMEOUT: Optional[int] = 15

DEFAULT_PORT = 161
DEFAULT_TIMEOUT = 5
DEFAULT_AUTHPROTO = "md5"
DEFAULT_PRIVPROTO = "des"

# OIDs from NUTANIX-MIB.TXT
CLUSTER_TOTAL_OID = "1.3.6.1.4.1.41263.504"
CLUSTER_USED_OID = "1.3.6.1.4.1.41263.505"
POOL_TOTAL_OID = "1.3.6.1.4.1.41263.7.1.4"
POOL_USED_OID = "1.3.6.1.4.1.41263.7.1.5"

AUTH_PROTOCOLS = {
    "md5": USM_AUTH_HMAC96_MD5,
    "sha": USM_AUTH_HMAC96_SHA,
    "sha224": USM_AUTH_HMAC128_SHA224,
    "sha256": USM_AUTH_HMAC192_SHA256,
    "sha384": USM_AUTH_HMAC256_SHA384,
    "sha512": USM_AUTH_HMAC384_SHA512,
}

PRIV_PROTOCOLS = {
    "des": USM_PRIV_CBC56_DES,
    "3des": USM_PRIV_CBC168_3DES,
    "aes": USM_PRIV_CFB128_AES,
    "aes128": USM_PRIV_CFB128_AES,
    "aes192": USM_PRIV_CFB192_AES,
    "aes256": USM_PRIV_CFB256_AES,
}

NUMBER_RE = re.compile(r"^-?(\d+\.?\d*|\.\d+)$")

# USM keys shorter than this are refused by the agent and by pysnmp
MIN_USM_KEY_LENGTH = 8

log = logging.getLogger("check_nutanix_capacity")


# ---------------------------------------------------------------------------
# Errors: every one of them ends the run with the state it carries
# ---------------------------------------------------------------------------

class PluginExit(Exception):
    def __init__(self, state: int, text: str):
        super().__init__(text)
        self.state = state
        self.text = text


class InvalidConfiguration(PluginExit):
    """Bad command line; the usage synopsis is appended to the message."""

    def __init__(self, message: str = ""):
        text = f"{message}\n{usage()}" if message else usage()
        super().__init__(UNKNOWN, text)


class SessionError(PluginExit):
    def __init__(self, message: str):
        super().__init__(UNKNOWN, f"ERROR opening session: {message}.")


class QueryError(PluginExit):
    def __init__(self, message: str):
        super().__init__(UNKNOWN, f"ERROR: Description table : {message}.")


class MissingMetric(PluginExit):
    def __init__(self, what: str):
        super().__init__(UNKNOWN, f"{what} : UNKNOWN")


class GlobalTimeout(PluginExit):
    def __init__(self):
        super().__init__(UNKNOWN, "No answer from host")


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class CommunityAuth:
    community: str
    v2c: bool = False

    @property
    def label(self) -> str:
        return "SNMP v2c login" if self.v2c else "SNMP v1 login"


@dataclass(frozen=True)
class UsmAuth:
    login: str
    passwd: str
    authproto: str = DEFAULT_AUTHPROTO
    privpass: Optional[str] = None
    privproto: str = DEFAULT_PRIVPROTO

    @property
    def with_privacy(self) -> bool:
        return self.privpass is not None

    @property
    def label(self) -> str:
        if self.with_privacy:
            return f"SNMPv3 AuthPriv login : {self.login}, {self.authproto}, {self.privproto}"
        return f"SNMPv3 AuthNoPriv login : {self.login}, {self.authproto}"


Auth = Union[CommunityAuth, UsmAuth]


@dataclass(frozen=True)
class Config:
    host: str
    auth: Auth
    option: str
    warn: float
    crit: float
    port: int = DEFAULT_PORT
    timeout: float = DEFAULT_TIMEOUT
    verbose: bool = False
    perfdata: bool = False

    @property
    def check_pool(self) -> bool:
        return "pool" in self.option.lower()

    @property
    def check_cluster(self) -> bool:
        return "cluster" in self.option.lower()


def usage() -> str:
    return (
        "Usage: check_nutanix_capacity.py [-v] -H <host> -C <snmp_community> [-2] | "
        "(-l login -x passwd [-X pass -L <authp>,<privp>]) [-P <port>] -o <pool/cluster> "
        "-w <warn level> -c <crit level> [-f] [-t <timeout>] [-V]"
    )


def version_text() -> str:
    return f"check_nutanix_capacity version : {VERSION}"


HELP_TEXT = """\
This plugin retrieves Nutanix storage pool utilisation or checks that a
cluster keeps enough free capacity to stay resilient.
-v, --verbose
   print extra debugging information
-h, --help
   print this help message
-H, --hostname=HOST
   name or IP address of host of the cluster
-C, --community=COMMUNITY NAME
   community name for the host's SNMP agent (implies v1 protocol)
-2, --v2c
   Use snmp v2c
-l, --login=LOGIN ; -x, --passwd=PASSWD
   Login and auth password for snmpv3 authentication
   If no priv password exists, implies AuthNoPriv
-X, --privpass=PASSWD
   Priv password for snmpv3 (AuthPriv protocol)
-L, --protocols=<authproto>,<privproto>
   <authproto> : Authentication protocol (md5|sha|sha224|sha256|sha384|sha512 : default md5)
   <privproto> : Priv protocol (des|3des|aes|aes192|aes256 : default des)
-P, --port=PORT
   SNMP port (Default 161)
-o, --option=pool | cluster
   use pool to check storage pool usage, use cluster to check cluster data resiliency capacity
-w, --warn=INTEGER
   warning level in percentage of the max value (a trailing % is ignored,
   negative values are accepted: -w -5 or -w=-5)
-c, --critical=INTEGER
   critical level in percentage of the max value
-f, --perfparse
   Perfparse compatible output, appended to the status line as
   <pool|cluster>UsagePercent=<percent>;<warn>;<crit>
-t, --timeout=INTEGER
   timeout for SNMP in seconds (Default: 5)
-V, --version
   prints version number"""


def help_text() -> str:
    return f"\nSNMP remote to check cluster and Storage pool used capacity {VERSION}\n{usage()}\n{HELP_TEXT}"


class _Parser(argparse.ArgumentParser):
    # argparse exits 2 on errors; plugins must report UNKNOWN instead
    def error(self, message):
        raise InvalidConfiguration(message)


def _build_parser() -> argparse.ArgumentParser:
    ap = _Parser(prog="check_nutanix_capacity.py", add_help=False)
    ap.add_argument("-v", "--verbose", action="store_true")
    ap.add_argument("-h", "--help", action="store_true")
    ap.add_argument("-H", "--hostname")
    ap.add_argument("-P", "-p", "--port", type=int, default=DEFAULT_PORT)
    ap.add_argument("-C", "--community")
    ap.add_argument("-l", "--login")
    ap.add_argument("-x", "--passwd")
    ap.add_argument("-X", "--privpass")
    ap.add_argument("-L", "--protocols")
    ap.add_argument("-t", "--timeout")
    ap.add_argument("-V", "--version", action="store_true")
    ap.add_argument("-2", "--v2c", action="store_true")
    ap.add_argument("-c", "--critical")
    ap.add_argument("-w", "--warn")
    ap.add_argument("-o", "--option")
    ap.add_argument("-f", "--perfparse", action="store_true")
    return ap


# Options taking a possibly negative number
NUMERIC_OPTIONS = {"-w", "--warn", "-c", "--critical", "-t", "--timeout"}


def _attach_numeric_values(argv: List[str]) -> List[str]:
    # With -2 registered, argparse reads "-5" as an option flag; "-w=-5" is unambiguous
    out = []
    args = iter(argv)
    for arg in args:
        if arg in NUMERIC_OPTIONS:
            value = next(args, None)
            if value is not None:
                arg = f"{arg}={value}"
        out.append(arg)
    return out


def is_number(value: str) -> bool:
    return bool(NUMBER_RE.match(value.strip()))


def _parse_auth(args) -> Auth:
    if args.community is None and (args.login is None or args.passwd is None):
        raise InvalidConfiguration("Put snmp login info!")
    if (args.login is not None or args.passwd is not None) and (args.community is not None or args.v2c):
        raise InvalidConfiguration("Can't mix snmp v1,2c,3 protocols!")

    authproto, privproto = DEFAULT_AUTHPROTO, DEFAULT_PRIVPROTO
    if args.protocols is not None:
        if args.login is None:
            raise InvalidConfiguration("Put snmp V3 login info with protocols!")
        parts = args.protocols.split(",")
        if parts[0] != "":
            authproto = parts[0]
        if len(parts) > 1:
            privproto = parts[1]
            if args.privpass is None:
                raise InvalidConfiguration("Put snmp V3 priv login info with priv protocols!")

    if args.login is not None:
        return UsmAuth(args.login, args.passwd, authproto, args.privpass, privproto)
    return CommunityAuth(args.community, args.v2c)


def parse_config(argv: Optional[List[str]] = None) -> Config:
    """
    Validate the command line and build the run configuration.
    Raises PluginExit (UNKNOWN) for help/version and InvalidConfiguration
    for anything that fails validation; the first failing rule wins.
    """
    if argv is None:
        argv = sys.argv[1:]
    args = _build_parser().parse_args(_attach_numeric_values(argv))

    timeout: float = DEFAULT_TIMEOUT
    if args.timeout is not None:
        if not is_number(args.timeout) or not 2 <= float(args.timeout) <= 60:
            raise InvalidConfiguration("Timeout must be >1 and <60 !")
        timeout = float(args.timeout)

    if args.help:
        raise PluginExit(UNKNOWN, help_text())
    if args.version:
        raise PluginExit(UNKNOWN, version_text())
    if not args.hostname:
        raise InvalidConfiguration()

    auth = _parse_auth(args)

    option = args.option or ""
    if "pool" not in option.lower() and "cluster" not in option.lower():
        raise InvalidConfiguration("Option should be pool or cluster")

    if args.warn is None or args.critical is None:
        raise InvalidConfiguration("put warning and critical info!")
    warn = args.warn.replace("%", "")
    crit = args.critical.replace("%", "")
    if not is_number(warn) or not is_number(crit):
        raise InvalidConfiguration("Numeric value for warning or critical !")
    if float(warn) > float(crit):
        raise InvalidConfiguration("warning <= critical !")

    return Config(
        host=args.hostname,
        auth=auth,
        option=option,
        warn=float(warn),
        crit=float(crit),
        port=args.port,
        timeout=timeout,
        verbose=args.verbose,
        perfdata=args.perfparse,
    )


# ---------------------------------------------------------------------------
# SNMP session
# ---------------------------------------------------------------------------

def build_auth_data(auth: Auth):
    if isinstance(auth, CommunityAuth):
        # mpModel 0 is SNMPv1, 1 is SNMPv2c
        return CommunityData(auth.community, mpModel=1 if auth.v2c else 0)

    authproto = AUTH_PROTOCOLS.get(auth.authproto.lower())
    if authproto is None:
        raise SessionError(f"Unknown auth protocol {auth.authproto}")
    if len(auth.passwd) < MIN_USM_KEY_LENGTH:
        raise SessionError(f"The authPassword must be at least {MIN_USM_KEY_LENGTH} characters")
    if not auth.with_privacy:
        return UsmUserData(auth.login, authKey=auth.passwd, authProtocol=authproto)

    privproto = PRIV_PROTOCOLS.get(auth.privproto.lower())
    if privproto is None:
        raise SessionError(f"Unknown priv protocol {auth.privproto}")
    if len(auth.privpass) < MIN_USM_KEY_LENGTH:
        raise SessionError(f"The privPassword must be at least {MIN_USM_KEY_LENGTH} characters")
    return UsmUserData(
        auth.login,
        authKey=auth.passwd,
        authProtocol=authproto,
        privKey=auth.privpass,
        privProtocol=privproto,
    )


def _to_number(value) -> Optional[float]:
    try:
        return int(value)
    except (TypeError, ValueError):
        pass
    try:
        return float(str(value))
    except ValueError:
        return None


class SnmpSession:
    """One SNMP engine + target pair, used for a handful of scalar GETs."""

    def __init__(self, engine: SnmpEngine, auth_data, target: UdpTransportTarget):
        self._engine = engine
        self._auth_data = auth_data
        self._target = target

    async def get(self, oid: str) -> Optional[float]:
        """
        GET a single OID. Returns the numeric value bound to exactly that
        OID, or None when the agent answered without one.
        Transport and protocol errors raise QueryError.
        """
        log.debug("GET %s", oid)
        try:
            error_indication, error_status, error_index, var_binds = await get_cmd(
                self._engine,
                self._auth_data,
                self._target,
                ContextData(),
                ObjectType(ObjectIdentity(oid)),
                lookupMib=False,
            )
        except PySnmpError as e:
            raise QueryError(str(e) or type(e).__name__) from e
        if error_indication:
            raise QueryError(str(error_indication))
        if error_status:
            raise QueryError(error_status.prettyPrint())

        for name, value in var_binds:
            log.debug("GET-RESULT %s = %s", name, value.prettyPrint())
            if str(name) != oid:
                continue
            if isinstance(value, (NoSuchObject, NoSuchInstance, EndOfMibView)):
                return None
            return _to_number(value)
        return None

    def close(self) -> None:
        self._engine.close_dispatcher()


async def open_session(config: Config) -> SnmpSession:
    log.debug(config.auth.label)
    try:
        auth_data = build_auth_data(config.auth)
    except PySnmpError as e:
        raise SessionError(str(e) or type(e).__name__) from e
    engine = SnmpEngine()
    try:
        target = await UdpTransportTarget.create(
            (config.host, config.port), timeout=config.timeout, retries=1
        )
    except PySnmpError as e:
        engine.close_dispatcher()
        raise SessionError(str(e)) from e
    return SnmpSession(engine, auth_data, target)


# ---------------------------------------------------------------------------
# Data retrieval
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class CapacitySample:
    used: float
    total: float

    @property
    def free(self) -> float:
        return self.total - self.used

    @property
    def percent_used(self) -> float:
        # Ratio against free capacity, as reported by the Perl plugin
        return self.used / self.free * 100


async def _fetch(session: SnmpSession, oid: str, missing: str) -> float:
    value = await session.get(oid)
    if value is None:
        raise MissingMetric(missing)
    return value


async def collect(config: Config) -> Dict[str, CapacitySample]:
    """Fetch the counters for every selected mode over a single session."""
    samples: Dict[str, CapacitySample] = {}
    session = await open_session(config)
    try:
        if config.check_pool:
            used = await _fetch(session, POOL_USED_OID, "No storage pool usage data")
            total = await _fetch(session, POOL_TOTAL_OID, "No Storage pool capacity data")
            samples["pool"] = CapacitySample(used, total)
        if config.check_cluster:
            total = await _fetch(session, CLUSTER_TOTAL_OID, "No cluster capacity data")
            used = await _fetch(session, CLUSTER_USED_OID, "No cluster usage data")
            samples["cluster"] = CapacitySample(used, total)
    finally:
        session.close()
    return samples


def watchdog_seconds(config: Config) -> float:
    if GLOBAL_TIMEOUT is not None:
        log.debug("Alarm at %s + 5", GLOBAL_TIMEOUT)
        return GLOBAL_TIMEOUT + 5
    log.debug("no global timeout defined : %s + 10", _fmt(config.timeout))
    return config.timeout + 10


def run_with_watchdog(config: Config) -> Dict[str, CapacitySample]:
    window = watchdog_seconds(config)
    try:
        return asyncio.run(asyncio.wait_for(collect(config), timeout=window))
    except asyncio.TimeoutError:
        raise GlobalTimeout() from None


# ---------------------------------------------------------------------------
# Evaluation & output
# ---------------------------------------------------------------------------

SUBJECTS = {
    "cluster": {
        CRITICAL: "CRITICAL: Cluster resilience not satisfied",
        WARNING: "WARNING: Cluster resilience limited",
        OK: "Cluster resilience",
    },
    "pool": {
        CRITICAL: "CRITICAL: Storage pool capacity usage is high",
        WARNING: "WARNING: Storage pool usage is warning",
        OK: "Storage pool usage",
    },
}

# Cluster is reported first; the last evaluated mode sets the exit code
EVAL_ORDER = ("cluster", "pool")


@dataclass(frozen=True)
class CheckResult:
    mode: str
    state: int
    sample: CapacitySample
    percent: Optional[float]
    message: str


def _fmt(value: float) -> str:
    # %.15g, Perl's default numeric stringification
    return format(value, ".15g")


def eval_thresholds(percent: float, warn: float, crit: float) -> int:
    if percent > crit:
        return CRITICAL
    if percent > warn:
        return WARNING
    return OK


def evaluate(mode: str, sample: CapacitySample, warn: float, crit: float) -> CheckResult:
    if sample.free <= 0:
        return CheckResult(
            mode, UNKNOWN, sample, None,
            f"{SUBJECTS[mode][OK]}: free capacity is {_fmt(sample.free)}, cannot compute usage",
        )
    percent = sample.percent_used
    state = eval_thresholds(percent, warn, crit)
    message = f"{SUBJECTS[mode][state]}: used capacity {_fmt(percent)}"
    if state == OK:
        message += " : OK"
    return CheckResult(mode, state, sample, percent, message)


def status_line(result: CheckResult, config: Config) -> str:
    line = result.message
    if config.perfdata and result.percent is not None:
        line += f" | {result.mode}UsagePercent={_fmt(result.percent)};{_fmt(config.warn)};{_fmt(config.crit)}"
    return line


def raw_values_line(result: CheckResult) -> str:
    m = result.mode
    s = result.sample
    percent = "NaN" if result.percent is None else _fmt(result.percent)
    sep = "-" * 31
    return (
        f"{sep} {m}TotalCapacity = {_fmt(s.total)}, {m}UsedCapacity = {_fmt(s.used)}, "
        f"{m}UsagePercent = {percent}, {m}FreeCapacity = {_fmt(s.free)} {sep}"
    )


def report(samples: Dict[str, CapacitySample], config: Config) -> int:
    """Print status and raw value lines per mode; return the exit state."""
    state = UNKNOWN
    for mode in EVAL_ORDER:
        if mode not in samples:
            continue
        result = evaluate(mode, samples[mode], config.warn, config.crit)
        print(status_line(result, config))
        print(raw_values_line(result))
        state = result.state
    return state


# ---------------------------------------------------------------------------
# Entry points
# ---------------------------------------------------------------------------

def _setup_logging(verbose: bool) -> None:
    log.handlers.clear()
    log.propagate = False
    if verbose:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter("%(message)s"))
        log.addHandler(handler)
        log.setLevel(logging.DEBUG)
    else:
        log.addHandler(logging.NullHandler())
        log.setLevel(logging.WARNING)


def main(argv: Optional[List[str]] = None) -> int:
    try:
        config = parse_config(argv)
        _setup_logging(config.verbose)
        samples = run_with_watchdog(config)
    except PluginExit as e:
        print(e.text)
        return e.state
    return report(samples, config)


def run():
    sys.exit(main())


if __name__ == "__main__":
    run()
