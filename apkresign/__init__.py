#!/usr/bin/python3
# encoding: utf-8
# SPDX-FileCopyrightText: 2024 FC (Fay) Stegerman <flx@obfusk.net>
# SPDX-License-Identifier: GPL-3.0-or-later

"""
check/sign/zip-align android apks for automated testing

apkresign checks whether an APK is already signed with the expected
certificate (either the default test certificate or a custom keystore) and,
when it isn't, (re)signs and zip-aligns it.  All the actual work is done by
external tools: sign.jar, unsign.jar & verify.jar (run with java), jarsigner &
keytool (from the JDK in JAVA_HOME), and zipalign (from the Android SDK build
tools).


CLI
===

$ apkresign sign [OPTIONS] APK
$ apkresign align [OPTIONS] APK
$ apkresign check [OPTIONS] APK PACKAGE
$ apkresign ensure-signed [OPTIONS] APK PACKAGE
$ apkresign fingerprint [OPTIONS] [CERT_FILE]

Options can also be set using environment variables, e.g. APKRESIGN_KEYSTORE
for --keystore; JAVA_HOME and ANDROID_HOME (or ANDROID_SDK_ROOT) are used to
find the JDK and SDK tools.


API
===

>> from apkresign import SigningConfig, check_apk_cert, sign
>> config = SigningConfig.from_env(helper_jar_path="/path/to/jars")
>> if not check_apk_cert(config, apk, "com.example.app"):
..     sign(config, apk)

Use SigningConfig(use_keystore=True, keystore_path=..., keystore_password=...,
key_alias=..., key_password=...) to sign with a custom keystore instead of the
default certificate.

NB: operations are not safe to run concurrently for the same APK or package;
callers must serialise them.
"""

import logging
import os
import re
import shutil
import subprocess
import sys
import tempfile
import zipfile

from typing import Any, Callable, Dict, List, NamedTuple, Optional, Pattern, Sequence, Tuple, Type

__version__ = "0.1.0"
NAME = "apkresign"

SIGN_JAR, UNSIGN_JAR, VERIFY_JAR = "sign.jar", "unsign.jar", "verify.jar"
SIGALG, DIGESTALG = "MD5withRSA", "SHA1"
ZIPALIGN_BOUNDARY = 4
CERT_DIR = "cert"
SECRET_ARGS: Tuple[str, ...] = ("-storepass", "-keypass")

# NB: signature block files in subdirectories match too, like android does
APK_SIG_BLOCK = re.compile(r"META-INF/.*\.(?i:RSA)")

# number of colon-separated hex pairs per digest
FINGERPRINT_GROUPS: Dict[str, int] = dict(MD5=16, SHA1=20, SHA256=32)

log = logging.getLogger(__name__)


class APKResignError(Exception):
    """Base class for errors."""


class PreconditionError(APKResignError):
    """Required file (APK, keystore) missing."""


class ConfigurationError(APKResignError):
    """Required configuration (e.g. JAVA_HOME) missing."""


class ToolInvocationError(APKResignError):
    """External tool failed or could not be run."""


class SigningError(ToolInvocationError):
    """Signing (or unsigning) tool failed."""


class AlignmentError(ToolInvocationError):
    """zipalign failed."""


class SigningConfig(NamedTuple):
    """
    Immutable signing configuration.

    When use_keystore is False, the default certificate (sign.jar) is used and
    the keystore fields are ignored.  tmp_dir defaults to the system temporary
    directory; java_home and android_home are filled in from the environment
    by from_env().
    """

    use_keystore: bool = False
    keystore_path: Optional[str] = None
    keystore_password: Optional[str] = None
    key_alias: Optional[str] = None
    key_password: Optional[str] = None
    helper_jar_path: Optional[str] = None
    tmp_dir: Optional[str] = None
    java_home: Optional[str] = None
    android_home: Optional[str] = None
    zipalign: Optional[str] = None
    digest: str = "MD5"

    @classmethod
    def from_env(cls, **kwargs: Any) -> "SigningConfig":
        """Create SigningConfig w/ java_home & android_home from the environment."""
        env = dict(
            java_home=os.environ.get("JAVA_HOME") or None,
            android_home=os.environ.get("ANDROID_HOME") or os.environ.get("ANDROID_SDK_ROOT") or None,
        )
        return cls(**{**env, **{k: v for k, v in kwargs.items() if v is not None}})


def is_signature_block(filename: str) -> bool:
    r"""
    Returns whether filename is an RSA signature block file in META-INF/.

    NB: only the extension is case-insensitive.

    >>> is_signature_block("META-INF/CERT.RSA")
    True
    >>> is_signature_block("META-INF/cert.rsa")
    True
    >>> is_signature_block("META-INF/oops/CERT.RSA")
    True
    >>> is_signature_block("META-INF/CERT.SF")
    False
    >>> is_signature_block("META-INF/CERT.EC")
    False
    >>> is_signature_block("meta-inf/CERT.RSA")
    False
    >>> is_signature_block("assets/META-INF/CERT.RSA")
    False

    """
    return bool(APK_SIG_BLOCK.fullmatch(filename))


################################################################################
#
# keytool -v -list / -printcert output looks like this (older versions print
# an MD5 fingerprint; newer ones only SHA1 and SHA256):
#
#   Certificate fingerprints:
#            MD5:  2B:84:1C:2B:84:85:94:EA:6D:7E:06:0A:56:AB:2F:7A
#            SHA1: 5B:A0:FB:E7:70:8B:9C:12:0C:4D:E7:2F:7C:04:4E:91:33:E3:95:C3
#            Signature algorithm name: SHA1withRSA
#
# NB: brittle by construction; keep all parsing of tool output here.
#
################################################################################

def fingerprint_pattern(digest: str = "MD5") -> Pattern[str]:
    r"""
    Regex matching a line containing digest followed by a fingerprint.

    The first group is the fingerprint (colon-separated hex pairs).

    >>> fingerprint_pattern().pattern
    '.*MD5.*((?:[a-fA-F0-9]{2}:){15}[a-fA-F0-9]{2})'
    >>> fingerprint_pattern("sha256").pattern
    '.*SHA256.*((?:[a-fA-F0-9]{2}:){31}[a-fA-F0-9]{2})'
    >>> fingerprint_pattern("CRC32")
    Traceback (most recent call last):
    ...
    ValueError: unsupported digest: 'CRC32'

    """
    digest = digest.upper()
    try:
        n = FINGERPRINT_GROUPS[digest]
    except KeyError:
        raise ValueError(f"unsupported digest: {digest!r}")     # pylint: disable=W0707
    h = "a-fA-F0-9"
    return re.compile(f".*{digest}.*((?:[{h}]{{2}}:){{{n - 1}}}[{h}]{{2}})",
                      re.IGNORECASE | re.MULTILINE)


def normalize_fingerprint(fingerprint: str) -> str:
    """
    Normalize fingerprint (upper case hex pairs).

    >>> normalize_fingerprint("2b:84:1c:2B")
    '2B:84:1C:2B'

    """
    return fingerprint.strip().upper()


def parse_fingerprint(output: str, pattern: Pattern[str]) -> Optional[str]:
    r"""
    Parse (normalized) fingerprint from keytool output.

    Returns None if no line matches.

    >>> output = '''Certificate fingerprints:
    ... \t MD5:  2b:84:1c:2b:84:85:94:ea:6d:7e:06:0a:56:ab:2f:7a
    ... \t SHA1: 5B:A0:FB:E7:70:8B:9C:12:0C:4D:E7:2F:7C:04:4E:91:33:E3:95:C3
    ... \t Signature algorithm name: SHA1withRSA'''
    >>> parse_fingerprint(output, fingerprint_pattern())
    '2B:84:1C:2B:84:85:94:EA:6D:7E:06:0A:56:AB:2F:7A'
    >>> parse_fingerprint(output, fingerprint_pattern("SHA1"))
    '5B:A0:FB:E7:70:8B:9C:12:0C:4D:E7:2F:7C:04:4E:91:33:E3:95:C3'
    >>> parse_fingerprint(output, fingerprint_pattern("SHA256")) is None
    True
    >>> parse_fingerprint("keytool error: java.lang.Exception", fingerprint_pattern()) is None
    True

    """
    if m := pattern.search(output):
        return normalize_fingerprint(m.group(1))
    return None


def mask_secrets(args: Sequence[str]) -> List[str]:
    """
    Mask passwords in command line (for logging).

    >>> mask_secrets(["jarsigner", "-storepass", "s3cret", "-keypass", "s3cret", "app.apk"])
    ['jarsigner', '-storepass', '****', '-keypass', '****', 'app.apk']

    """
    masked = list(args)
    for i, arg in enumerate(masked[:-1]):
        if arg in SECRET_ARGS:
            masked[i + 1] = "****"
    return masked


def run_tool(args: Sequence[str], error: Type[ToolInvocationError] = ToolInvocationError,
             what: Optional[str] = None) -> "subprocess.CompletedProcess[str]":
    """
    Run external tool; returns the CompletedProcess (w/ stdout & stderr as str).

    Raises error (ToolInvocationError or a subclass) if the tool exits with a
    non-zero status or can't be run at all; the message includes the tool's own
    error output.
    """
    if what is None:
        what = f"{os.path.basename(args[0])} failed"
    log.debug("Running: %s", " ".join(mask_secrets(args)))
    try:
        return subprocess.run(args, check=True, stdout=subprocess.PIPE,
                              stderr=subprocess.PIPE, text=True, errors="replace")
    except subprocess.CalledProcessError as e:
        detail = (e.stderr or e.stdout or "").strip() or f"exit status {e.returncode}"
        raise error(f"{what}. Original error: {detail}")            # pylint: disable=W0707
    except OSError as e:
        raise error(f"{what}. Original error: {e}")                 # pylint: disable=W0707


def _exe(path: str) -> str:
    return path + ".exe" if os.name == "nt" else path


def java_cmd(config: SigningConfig) -> str:
    """java from java_home if set, from $PATH otherwise."""
    if config.java_home:
        return _exe(os.path.join(config.java_home, "bin", "java"))
    return "java"


def jdk_tool(config: SigningConfig, tool: str) -> str:
    """
    Path to JDK tool (e.g. keytool or jarsigner) in java_home.

    Raises ConfigurationError if java_home is not set.
    """
    if not config.java_home:
        raise ConfigurationError("JAVA_HOME is not set")
    return _exe(os.path.join(config.java_home, "bin", tool))


def helper_jar(config: SigningConfig, jar: str) -> str:
    """Path to helper jar (e.g. sign.jar) in helper_jar_path."""
    if not config.helper_jar_path:
        raise ConfigurationError("helper jar path is not set")
    return os.path.abspath(os.path.join(config.helper_jar_path, jar))


def version_key(version: str) -> Tuple[int, ...]:
    """
    Sort key for build-tools versions.

    >>> sorted(["30.0.3", "9.0.0", "28.0.3", "30.0.10"], key=version_key)
    ['9.0.0', '28.0.3', '30.0.3', '30.0.10']

    """
    return tuple(int(x) for x in re.findall(r"\d+", version))


def find_zipalign(config: SigningConfig) -> str:
    """
    Find zipalign.

    Uses config.zipalign if set; otherwise the newest version in the SDK's
    build-tools; otherwise zipalign in $PATH.

    Raises ConfigurationError if none is found.
    """
    if config.zipalign:
        return config.zipalign
    if config.android_home:
        build_tools = os.path.join(config.android_home, "build-tools")
        if os.path.isdir(build_tools):
            for version in sorted(os.listdir(build_tools), key=version_key, reverse=True):
                zipalign = _exe(os.path.join(build_tools, version, "zipalign"))
                if os.path.exists(zipalign):
                    return zipalign
    if zipalign := shutil.which("zipalign"):
        return zipalign
    raise ConfigurationError("zipalign not found (set ANDROID_HOME or use --zipalign)")


def require_keystore(config: SigningConfig) -> None:
    """
    Check that the keystore is configured and exists.

    Raises ConfigurationError or PreconditionError.
    """
    if not (config.keystore_path and config.key_alias and config.keystore_password):
        raise ConfigurationError("keystore, alias, and keystore password must be set")
    if not os.path.exists(config.keystore_path):
        raise PreconditionError(f"Keystore: {config.keystore_path} doesn't exist")


def sign_with_default_cert(config: SigningConfig, apk: str) -> None:
    """
    Sign APK w/ the default certificate using sign.jar (in place).

    Raises PreconditionError if the APK doesn't exist, SigningError if sign.jar
    fails.
    """
    log.debug("Resigning apk.")
    if not os.path.exists(apk):
        raise PreconditionError(f"{apk} file doesn't exist")
    run_tool([java_cmd(config), "-jar", helper_jar(config, SIGN_JAR), apk, "--override"],
             SigningError, "Could not sign with default certificate")


def sign_with_custom_cert(config: SigningConfig, apk: str) -> None:
    """
    Sign APK w/ the configured keystore (in place): first strips any existing
    signature using unsign.jar, then signs using jarsigner.

    Raises PreconditionError if the keystore or APK doesn't exist, SigningError
    if either tool fails.
    """
    require_keystore(config)
    if not os.path.exists(apk):
        raise PreconditionError(f"{apk} file doesn't exist")
    if not config.key_password:
        raise ConfigurationError("key password must be set")
    jarsigner = jdk_tool(config, "jarsigner")
    what = "Could not sign with custom certificate"
    log.debug("Unsigning apk.")
    run_tool([java_cmd(config), "-jar", helper_jar(config, UNSIGN_JAR), apk], SigningError, what)
    log.debug("Signing apk.")
    run_tool([jarsigner, "-sigalg", SIGALG, "-digestalg", DIGESTALG,
              "-keystore", config.keystore_path, "-storepass", config.keystore_password,
              "-keypass", config.key_password, apk, config.key_alias], SigningError, what)


def sign(config: SigningConfig, apk: str) -> None:
    """Sign APK (w/ custom or default certificate), then zip-align it."""
    if config.use_keystore:
        sign_with_custom_cert(config, apk)
    else:
        sign_with_default_cert(config, apk)
    # NB: signing can change the layout, so always align afterwards
    zip_align_apk(config, apk)


def zip_align_apk(config: SigningConfig, apk: str) -> None:
    """
    Zip-align APK (in place).

    The aligned output is written to a temporary file next to the APK, which
    then replaces the APK (keeping its file mode); if zipalign fails,
    AlignmentError is raised and the APK is left untouched.

    Raises PreconditionError if the APK doesn't exist.
    """
    log.debug("Zip-aligning %s", apk)
    if not os.path.exists(apk):
        raise PreconditionError(f"{apk} file doesn't exist")
    zipalign = find_zipalign(config)
    apk_dir = os.path.dirname(os.path.abspath(apk))
    os.makedirs(apk_dir, exist_ok=True)
    fd, aligned_apk = tempfile.mkstemp(prefix=f".{NAME}-", suffix=".tmp", dir=apk_dir)
    os.close(fd)
    try:
        run_tool([zipalign, "-f", str(ZIPALIGN_BOUNDARY), apk, aligned_apk],
                 AlignmentError, "zipAlignApk failed")
        # NB: mkstemp() creates the output w/ mode 0600
        shutil.copymode(apk, aligned_apk)
        os.replace(aligned_apk, apk)
    finally:
        if os.path.exists(aligned_apk):
            os.remove(aligned_apk)


def check_apk_cert(config: SigningConfig, apk: str, pkg: str) -> bool:
    """
    Returns True when APK is already signed (w/ the expected certificate),
    False otherwise.

    A missing APK is considered not signed; so is any failure of verify.jar.
    When verify.jar succeeds, the APK is zip-aligned as well.  With a custom
    keystore, the signature block certificates are compared to the keystore
    instead (see check_custom_apk_cert()).
    """
    if not os.path.exists(apk):
        log.debug("APK doesn't exist. %s", apk)
        return False
    if config.use_keystore:
        return check_custom_apk_cert(config, apk, pkg)
    log.debug("Checking app cert for %s.", apk)
    verify_jar = helper_jar(config, VERIFY_JAR)
    try:
        run_tool([java_cmd(config), "-jar", verify_jar, apk])
        log.debug("App already signed.")
        zip_align_apk(config, apk)
    except ToolInvocationError as e:
        # FIXME: can't distinguish verify.jar crashing from an invalid signature
        log.debug("App not signed with debug cert: %s", e)
        return False
    return True


def check_custom_apk_cert(config: SigningConfig, apk: str, pkg: str) -> bool:
    """
    Returns whether any of APK's signature block certificates matches the
    keystore's (using config.digest fingerprints).

    Raises ConfigurationError if JAVA_HOME is not set.
    """
    pattern = fingerprint_pattern(config.digest)
    keytool = jdk_tool(config, "keytool")
    keystore_hash = get_keystore_md5(config, keytool, pattern)
    return check_apk_keystore_match(config, keytool, pattern, keystore_hash, pkg, apk)


def get_keystore_md5(config: SigningConfig, keytool: str,
                     pattern: Pattern[str]) -> Optional[str]:
    """
    Get fingerprint of the configured keystore key using keytool -list.

    NB: which fingerprint (MD5 by default) depends on pattern.

    Returns None if the output contains no fingerprint; raises
    ToolInvocationError if keytool fails.
    """
    require_keystore(config)
    log.debug("Printing keystore md5.")
    result = run_tool([keytool, "-v", "-list", "-alias", config.key_alias,
                       "-keystore", config.keystore_path,
                       "-storepass", config.keystore_password],
                      what="getKeystoreMd5 failed")
    keystore_hash = parse_fingerprint(result.stdout, pattern)
    log.debug("Keystore MD5: %s", keystore_hash)
    return keystore_hash


def get_cert_fingerprint(keytool: str, pattern: Pattern[str], cert_file: str) -> Optional[str]:
    """
    Get fingerprint of certificate (or signature block) file using keytool
    -printcert.

    Returns None if the output contains no fingerprint; raises
    ToolInvocationError if keytool fails.
    """
    result = run_tool([keytool, "-v", "-printcert", "-file", cert_file],
                      what=f"printing certificate {cert_file} failed")
    return parse_fingerprint(result.stdout, pattern)


def check_apk_keystore_match(config: SigningConfig, keytool: str, pattern: Pattern[str],
                             keystore_hash: Optional[str], pkg: str, apk: str) -> bool:
    """
    Returns whether the fingerprint of any signature block (META-INF/*.RSA) in
    APK matches keystore_hash.

    Each signature block is extracted to <tmp_dir>/<pkg>/cert/ (cleared first)
    and printed using keytool; the first match wins.
    """
    if keystore_hash is not None:
        keystore_hash = normalize_fingerprint(keystore_hash)
    entry_path = os.path.join(config.tmp_dir or tempfile.gettempdir(), pkg, CERT_DIR)
    with zipfile.ZipFile(apk, "r") as zf:
        for info in zf.infolist():
            if not is_signature_block(info.orig_filename):
                continue
            log.debug("Entry: %s", info.orig_filename)
            # NB: make sure <tmp_dir>/<pkg>/cert/ doesn't contain stale files
            if os.path.exists(entry_path):
                shutil.rmtree(entry_path)
            entry_file = zf.extract(info, entry_path)
            log.debug("Extracted %s", entry_file)
            log.debug("Printing apk md5.")
            entry_hash = get_cert_fingerprint(keytool, pattern, entry_file)
            matches = entry_hash is not None and entry_hash == keystore_hash
            log.debug("entryHash MD5: %s, keystore MD5: %s, matches keystore? %s",
                      entry_hash, keystore_hash, matches)
            if matches:
                return True
    return False


def ensure_signed(config: SigningConfig, apk: str, pkg: str) -> bool:
    """
    Sign (and zip-align) APK unless check_apk_cert() says it's already signed.

    Returns whether the APK was (re)signed.
    """
    if check_apk_cert(config, apk, pkg):
        return False
    sign(config, apk)
    return True


def main() -> None:
    """CLI; requires click."""

    import click

    def config_options(f: Callable[..., Any]) -> Callable[..., Any]:
        options = [
            click.option("--keystore", "keystore_path", type=click.Path(dir_okay=False),
                         envvar="APKRESIGN_KEYSTORE",
                         help="Use this keystore instead of the default certificate."),
            click.option("--storepass", "keystore_password", envvar="APKRESIGN_STOREPASS",
                         help="Keystore password."),
            click.option("--alias", "key_alias", envvar="APKRESIGN_ALIAS", help="Key alias."),
            click.option("--keypass", "key_password", envvar="APKRESIGN_KEYPASS",
                         help="Key password."),
            click.option("--helper-jar-path", type=click.Path(file_okay=False),
                         envvar="APKRESIGN_HELPER_JAR_PATH",
                         help=f"Directory containing {SIGN_JAR}, {UNSIGN_JAR} & {VERIFY_JAR}."),
            click.option("--tmp-dir", type=click.Path(file_okay=False), envvar="APKRESIGN_TMP_DIR",
                         help="Directory to extract signature block files to."),
            click.option("--zipalign", metavar="COMMAND", envvar="APKRESIGN_ZIPALIGN",
                         help="zipalign to use (default: find in ANDROID_HOME or $PATH)."),
            click.option("--digest", type=click.Choice(tuple(FINGERPRINT_GROUPS)), default="MD5",
                         show_default=True, envvar="APKRESIGN_DIGEST",
                         help="Fingerprint to compare certificates by."),
        ]
        for option in reversed(options):
            f = option(f)
        return f

    def make_config(kwargs: Dict[str, Any]) -> SigningConfig:
        return SigningConfig.from_env(use_keystore=kwargs["keystore_path"] is not None, **kwargs)

    @click.group(help="""
        apkresign - check/sign/zip-align android apks for automated testing
    """)
    @click.version_option(__version__)
    @click.option("-v", "--verbose", is_flag=True, envvar="APKRESIGN_VERBOSE",
                  help="Show debug output.")
    def cli(verbose: bool) -> None:
        logging.basicConfig(format=f"{NAME}: %(message)s",
                            level=logging.DEBUG if verbose else logging.WARNING)

    @cli.command("sign", help="""
        Sign APK (w/ the default certificate or --keystore), then zip-align it.
    """)
    @config_options
    @click.argument("apk", type=click.Path(exists=True, dir_okay=False))
    def sign_command(apk: str, **kwargs: Any) -> None:
        sign(make_config(kwargs), apk)

    @cli.command("align", help="""
        Zip-align APK (in place).
    """)
    @config_options
    @click.argument("apk", type=click.Path(exists=True, dir_okay=False))
    def align_command(apk: str, **kwargs: Any) -> None:
        zip_align_apk(make_config(kwargs), apk)

    @cli.command("check", help="""
        Check whether APK is signed w/ the expected certificate; exits with
        status 1 if not.
    """)
    @config_options
    @click.argument("apk", type=click.Path(dir_okay=False))
    @click.argument("package")
    def check_command(apk: str, package: str, **kwargs: Any) -> None:
        if check_apk_cert(make_config(kwargs), apk, package):
            click.echo("signed")
        else:
            click.echo("not signed")
            sys.exit(1)

    @cli.command("ensure-signed", help="""
        Sign & zip-align APK unless it's already signed w/ the expected
        certificate.
    """)
    @config_options
    @click.argument("apk", type=click.Path(exists=True, dir_okay=False))
    @click.argument("package")
    def ensure_signed_command(apk: str, package: str, **kwargs: Any) -> None:
        if ensure_signed(make_config(kwargs), apk, package):
            click.echo("signed")
        else:
            click.echo("already signed")

    @cli.command("fingerprint", help="""
        Print the fingerprint of CERT_FILE (e.g. an extracted META-INF/CERT.RSA),
        or of the --keystore key if CERT_FILE is omitted.

        This command requires JAVA_HOME to be set.
    """)
    @config_options
    @click.argument("cert_file", required=False, type=click.Path(exists=True, dir_okay=False))
    @click.pass_context
    def fingerprint_command(ctx: click.Context, /, cert_file: Optional[str],
                            **kwargs: Any) -> None:
        config = make_config(kwargs)
        if cert_file is None and not config.use_keystore:
            raise click.exceptions.UsageError("Expected CERT_FILE or --keystore", ctx)
        keytool = jdk_tool(config, "keytool")
        pattern = fingerprint_pattern(config.digest)
        if cert_file is not None:
            fingerprint = get_cert_fingerprint(keytool, pattern, cert_file)
        else:
            fingerprint = get_keystore_md5(config, keytool, pattern)
        if fingerprint is None:
            raise APKResignError(f"no {config.digest} fingerprint found")
        click.echo(fingerprint)

    try:
        cli(prog_name=NAME)
    except (APKResignError, zipfile.BadZipFile) as e:
        click.echo(f"Error: {e}.", err=True)
        sys.exit(1)


if __name__ == "__main__":
    main()

# vim: set tw=80 sw=4 sts=4 et fdm=marker :
