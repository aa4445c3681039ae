"""Composer / symfony/var-dumper discovery and installation.

Every check here shells out, so all functions are coroutines. Checks never
raise; ``ensure_dependencies`` and ``resolve_vendor_dir`` raise
DependencyError with the paths they looked at.
"""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

from ..config import VENDOR_PATH_ENV
from ..types import DependencyError

logger = logging.getLogger(__name__)

VAR_DUMPER_PACKAGE = "symfony/var-dumper"
DUMP_SERVER_BIN = Path("bin") / "var-dump-server"

_CLASS_CHECK = (
    "try {"
    " echo class_exists('Symfony\\\\Component\\\\VarDumper\\\\VarDumper')"
    " ? 'available' : 'not_available';"
    " } catch (Exception $e) { echo 'not_available'; }"
)


@dataclass
class DependencyReport:
    composer: bool = False
    var_dumper: bool = False
    var_dumper_path: str | None = None
    searched_paths: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "composer": self.composer,
            "varDumper": self.var_dumper,
            "varDumperPath": self.var_dumper_path,
            "searchedPaths": self.searched_paths,
        }


def vendor_roots(vendor_path: str | Path | None = None, cwd: Path | None = None) -> list[Path]:
    """Candidate ``vendor`` directories, highest priority first."""
    cwd = cwd or Path.cwd()
    home = Path.home()
    roots: list[Path] = []
    explicit = vendor_path or os.environ.get(VENDOR_PATH_ENV)
    if explicit:
        roots.append(Path(explicit))
    roots += [
        cwd / "vendor",
        home / ".composer" / "vendor",
        home / ".config" / "composer" / "vendor",
        Path("/usr/local/lib/composer/vendor"),
        Path("/usr/share/composer/vendor"),
    ]
    seen: set[Path] = set()
    unique: list[Path] = []
    for root in roots:
        if root not in seen:
            seen.add(root)
            unique.append(root)
    return unique


async def _run(*cmd: str, timeout: float = 120.0) -> tuple[int | None, str]:
    """Run *cmd*, returning (exit code, stdout). Exit code is None if it could not run."""
    try:
        proc = await asyncio.create_subprocess_exec(
            *cmd,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as e:
        logger.debug("Could not run %s: %s", cmd[0], e)
        return None, ""
    try:
        stdout, _ = await asyncio.wait_for(proc.communicate(), timeout)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        logger.warning("%s timed out after %.0fs", " ".join(cmd), timeout)
        return None, ""
    return proc.returncode, stdout.decode("utf-8", errors="replace")


async def check_composer(composer: str = "composer") -> bool:
    code, _ = await _run(composer, "--version", timeout=30.0)
    return code == 0


async def check_var_dumper(
    php: str = "php",
    vendor_path: str | Path | None = None,
    cwd: Path | None = None,
) -> DependencyReport:
    """Look for symfony/var-dumper on disk, then ask PHP whether it can load it."""
    report = DependencyReport()
    for root in vendor_roots(vendor_path, cwd):
        candidate = root / VAR_DUMPER_PACKAGE
        report.searched_paths.append(str(candidate))
        if candidate.exists():
            report.var_dumper = True
            report.var_dumper_path = str(candidate)
            return report

    code, out = await _run(php, "-r", _CLASS_CHECK, timeout=30.0)
    report.var_dumper = code == 0 and out.strip() == "available"
    return report


async def install_var_dumper(composer: str = "composer") -> None:
    logger.info("Installing %s globally via composer", VAR_DUMPER_PACKAGE)
    print(f"Installing {VAR_DUMPER_PACKAGE} (composer global require)...", flush=True)
    code, _ = await _run(composer, "global", "require", VAR_DUMPER_PACKAGE, timeout=600.0)
    if code != 0:
        raise DependencyError(f"Failed to install Symfony VarDumper (exit code: {code})")


async def check_dependencies(
    composer: str = "composer",
    php: str = "php",
    vendor_path: str | Path | None = None,
) -> DependencyReport:
    report = await check_var_dumper(php, vendor_path)
    report.composer = await check_composer(composer)
    return report


async def ensure_dependencies(
    composer: str = "composer",
    php: str = "php",
    auto_install: bool = True,
    vendor_path: str | Path | None = None,
) -> DependencyReport:
    """Verify composer and var-dumper, installing the latter if allowed.

    Raises DependencyError on a missing composer, a failed install, or a
    missing var-dumper when ``auto_install`` is off. Not retried.
    """
    report = await check_dependencies(composer, php, vendor_path)
    if not report.composer:
        raise DependencyError(
            "Composer is required but not found. Please install Composer first.",
            report.searched_paths,
        )
    if report.var_dumper:
        return report
    if not auto_install:
        raise DependencyError(
            f"{VAR_DUMPER_PACKAGE} not found. Install it with "
            f"'composer global require {VAR_DUMPER_PACKAGE}' or set {VENDOR_PATH_ENV}.",
            report.searched_paths,
        )
    try:
        await install_var_dumper(composer)
    except DependencyError as e:
        e.searched_paths = report.searched_paths
        raise
    report.var_dumper = True
    return report


def resolve_vendor_dir(vendor_path: str | Path | None = None, cwd: Path | None = None) -> Path:
    """Pick the vendor dir whose autoloader the launcher will require.

    An explicit *vendor_path* or ``$PHP_VENDOR_PATH`` wins, then the first
    root holding ``autoload.php``, then ``./vendor``. Raises DependencyError
    if the chosen dir or its ``bin/var-dump-server`` is missing.
    """
    cwd = cwd or Path.cwd()
    roots = vendor_roots(vendor_path, cwd)
    explicit = vendor_path or os.environ.get(VENDOR_PATH_ENV)
    if explicit:
        vendor = Path(explicit)
    else:
        vendor = next((r for r in roots if (r / "autoload.php").is_file()), cwd / "vendor")

    searched = [str(r) for r in roots]
    if not vendor.is_dir():
        raise DependencyError(
            f"Vendor directory not found at: {vendor}. Please ensure Symfony VarDumper "
            f"is installed or set {VENDOR_PATH_ENV} environment variable.",
            searched,
        )
    if not (vendor / DUMP_SERVER_BIN).exists():
        raise DependencyError(
            f"Symfony var-dump-server not found at: {vendor / DUMP_SERVER_BIN}. "
            "Please ensure Symfony VarDumper is installed.",
            searched,
        )
    return vendor
