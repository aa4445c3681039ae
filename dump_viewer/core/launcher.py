"""Generated PHP files: the dump server launcher and the application helper."""

from __future__ import annotations

import logging
import tempfile
import time
from pathlib import Path

from .framer import SEPARATOR

logger = logging.getLogger(__name__)

HELPER_FILENAME = "dump-viewer-helper.php"

_SERVER_TEMPLATE = """<?php
// dump-viewer launcher: runs Symfony's DumpServer and writes HTML dumps to stdout.

require_once '{autoload}';

use Symfony\\Component\\VarDumper\\Server\\DumpServer;
use Symfony\\Component\\VarDumper\\Dumper\\HtmlDumper;

$server = new DumpServer('{host}:{port}');
$dumper = new HtmlDumper();
$separator = "\\n{separator}\\n";

$server->start();
$server->listen(function ($data, $context, $clientId) use ($dumper, $separator) {{
    ob_start();

    if (isset($context['source'])) {{
        $file = $context['source']['file'] ?? 'unknown';
        $line = $context['source']['line'] ?? 0;
        echo '<!-- SOURCE_INFO: ' . htmlspecialchars(basename($file) . ' on line ' . $line) . ' -->';
    }}

    $dumper->dump($data);
    echo ob_get_clean(), $separator;
    flush();
}});
"""

_HELPER_TEMPLATE = """<?php
/**
 * dump-viewer helper. Include this file to send dump() output to the viewer.
 */

require_once '{autoload}';

use Symfony\\Component\\VarDumper\\VarDumper;
use Symfony\\Component\\VarDumper\\Cloner\\VarCloner;
use Symfony\\Component\\VarDumper\\Dumper\\ServerDumper;
use Symfony\\Component\\VarDumper\\Dumper\\CliDumper;
use Symfony\\Component\\VarDumper\\Dumper\\ContextProvider\\SourceContextProvider;

VarDumper::setHandler(function ($var) {{
    static $dumper = null;
    static $cloner = null;
    if ($cloner === null) {{ $cloner = new VarCloner(); }}
    if ($dumper === null) {{
        $dumper = new ServerDumper('tcp://{host}:{port}', new CliDumper(), [
            'source' => new SourceContextProvider('utf-8', getcwd()),
        ]);
    }}
    $dumper->dump($cloner->cloneVar($var));
}});
"""


def _php_path(path: Path) -> str:
    """Forward slashes, single quotes escaped for a PHP single-quoted literal."""
    return path.as_posix().replace("\\", "\\\\").replace("'", "\\'")


class LauncherFiles:
    """Owns every temp file it writes; ``cleanup()`` removes them all."""

    def __init__(self, directory: str | Path | None = None) -> None:
        self.directory = Path(directory or tempfile.gettempdir())
        self._files: set[Path] = set()

    @property
    def files(self) -> list[Path]:
        return sorted(self._files)

    def create_server_script(self, host: str, port: int, vendor_dir: str | Path) -> Path:
        autoload = Path(vendor_dir) / "autoload.php"
        code = _SERVER_TEMPLATE.format(
            autoload=_php_path(autoload),
            host=host,
            port=port,
            separator=SEPARATOR.decode("ascii"),
        )
        path = self.directory / f"symfony-dump-server-{int(time.time() * 1000)}.php"
        path.write_text(code)
        self._files.add(path)
        logger.debug("Wrote launcher script %s", path)
        return path

    def create_helper(
        self,
        port: int = 9912,
        vendor_dir: str | Path | None = None,
        host: str = "127.0.0.1",
    ) -> Path:
        autoload = Path(vendor_dir or Path.cwd() / "vendor") / "autoload.php"
        path = self.directory / HELPER_FILENAME
        path.write_text(_HELPER_TEMPLATE.format(autoload=_php_path(autoload), host=host, port=port))
        self._files.add(path)
        return path

    @property
    def has_helper(self) -> bool:
        return self.directory / HELPER_FILENAME in self._files

    def cleanup(self, keep_helper: bool = False) -> None:
        """Remove owned files. ``keep_helper`` spares the application include."""
        helper = self.directory / HELPER_FILENAME
        for path in list(self._files):
            if keep_helper and path == helper:
                continue
            try:
                path.unlink(missing_ok=True)
            except OSError as e:
                logger.debug("Could not remove %s: %s", path, e)
            self._files.discard(path)
