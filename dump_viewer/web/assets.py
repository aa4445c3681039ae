"""Serve Symfony VarDumper's own CSS/JS so dump markup renders as it would in PHP."""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

from fastapi.responses import JSONResponse, Response

from ..core.dependencies import vendor_roots

if TYPE_CHECKING:
    from fastapi import FastAPI

logger = logging.getLogger(__name__)

RESOURCES_SUBDIR = Path("symfony") / "var-dumper" / "Resources"
CSS_ROUTE = "/symfony-dump/css/htmlDescriptor.css"
JS_ROUTE = "/symfony-dump/js/htmlDescriptor.js"


@dataclass
class AssetPaths:
    css: Path | None = None
    js: Path | None = None
    resources_dir: Path | None = None


def asset_search_roots(vendor_path: str | Path | None = None, cwd: Path | None = None) -> list[Path]:
    """Vendor roots plus parent-directory and ``dump-viewer/`` vendors."""
    cwd = cwd or Path.cwd()
    extra = [
        cwd / ".." / "vendor",
        cwd / ".." / ".." / "vendor",
        cwd / ".." / ".." / ".." / "vendor",
        cwd / "dump-viewer" / "vendor",
    ]
    roots = vendor_roots(vendor_path, cwd)
    local = cwd / "vendor"
    # Parent vendors go right after ./vendor.
    split = roots.index(local) + 1 if local in roots else 0
    return roots[:split] + extra + roots[split:]


class SymfonyAssets:
    """Locate ``htmlDescriptor.css``/``.js`` once and serve them with caching headers."""

    def __init__(
        self,
        vendor_path: str | Path | None = None,
        *,
        max_age: int = 3600,
        search_roots: list[Path] | None = None,
    ) -> None:
        self.vendor_path = vendor_path
        self.max_age = max_age
        self._search_roots = search_roots
        self.paths = AssetPaths()

    def discover(self) -> bool:
        """Find the first ``symfony/var-dumper/Resources`` dir. True if both files exist."""
        roots = self._search_roots or asset_search_roots(self.vendor_path)
        for root in roots:
            resources = root / RESOURCES_SUBDIR
            if not resources.is_dir():
                continue
            css = resources / "css" / "htmlDescriptor.css"
            js = resources / "js" / "htmlDescriptor.js"
            self.paths = AssetPaths(
                css=css if css.is_file() else None,
                js=js if js.is_file() else None,
                resources_dir=resources,
            )
            break
        if self.available():
            logger.info("Symfony VarDumper assets found in %s", self.paths.resources_dir)
        else:
            logger.info("Symfony VarDumper assets not found; dumps render unstyled")
        return self.available()

    def available(self) -> bool:
        return (
            self.paths.css is not None
            and self.paths.js is not None
            and self.paths.css.is_file()
            and self.paths.js.is_file()
        )

    def health(self) -> dict:
        return {
            "status": "ok",
            "assetsAvailable": self.available(),
            "paths": {
                "css": CSS_ROUTE if self.paths.css else None,
                "js": JS_ROUTE if self.paths.js else None,
            },
        }

    def response(self, path: Path | None, media_type: str) -> Response:
        if path is None:
            return JSONResponse({"error": "Asset not found"}, status_code=404)
        resolved = path.resolve()
        if RESOURCES_SUBDIR.as_posix() not in resolved.as_posix():
            return JSONResponse({"error": "Access denied"}, status_code=403)
        if not resolved.is_file():
            return JSONResponse({"error": "Asset not found"}, status_code=404)
        try:
            content = resolved.read_bytes()
        except OSError as e:
            logger.error("Reading %s failed: %s", resolved, e)
            return JSONResponse({"error": "Internal server error"}, status_code=500)
        return Response(
            content,
            media_type=media_type,
            headers={
                "Cache-Control": f"public, max-age={self.max_age}",
                "ETag": f'"{hashlib.md5(content).hexdigest()}"',
                "X-Content-Type-Options": "nosniff",
            },
        )


def register_asset_routes(app: "FastAPI", assets: SymfonyAssets) -> None:
    """Register ``/symfony-dump/*`` routes."""

    @app.get(CSS_ROUTE)
    async def symfony_css():
        return assets.response(assets.paths.css, "text/css")

    @app.get(JS_ROUTE)
    async def symfony_js():
        return assets.response(assets.paths.js, "application/javascript")

    @app.get("/symfony-dump/health")
    async def symfony_health():
        return JSONResponse(assets.health())
