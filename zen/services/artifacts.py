from __future__ import annotations

import hashlib
import json
import logging
import os
import shutil
from pathlib import Path, PurePosixPath
from typing import Callable, Dict, Iterable, List, Optional

from zen.config import ZenConfig
from zen.schemas import AssetFile, AssetManifest

LOGGER = logging.getLogger("zen.artifacts")

StatusCallback = Callable[[str], None]


def file_digest(path: Path) -> str:
    digest = hashlib.sha256()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(65536), b""):
            digest.update(chunk)
    return digest.hexdigest()


def versioned_path(url_path: str, digest: str) -> str:
    """Insert the first 16 hex digits of ``digest`` before the suffix: ``lib/app-<hash>.js``."""
    path = PurePosixPath(url_path)
    name = f"{path.stem}-{digest[:16]}{path.suffix}"
    return str(path.with_name(name))


class ArtifactStore:
    """Content-addressed asset store plus per-session manifests, kept on disk.

    Assets are stored under their versioned path, so a file whose content is
    unchanged is never uploaded twice. Each session's manifest lives in
    ``session-<id>.json`` at the store root.
    """

    def __init__(self, root: Optional[Path] = None) -> None:
        resolved_root = root or Path.cwd() / ".zen" / "assets"
        self._root = resolved_root.resolve()
        self._root.mkdir(parents=True, exist_ok=True)

    @property
    def root(self) -> Path:
        return self._root

    def _safe_path(self, relative: str) -> Optional[Path]:
        target = (self._root / relative).resolve()
        if target != self._root and self._root not in target.parents:
            return None
        return target

    def manifest_path(self, session_id: str) -> Path:
        target = self._safe_path(f"session-{session_id}.json")
        if target is None or target.parent != self._root:
            raise ValueError(f"Invalid session id: {session_id!r}")
        return target

    def has(self, versioned: str) -> bool:
        target = self._safe_path(versioned)
        return target is not None and target.is_file()

    def build_manifest(self, session_id: str, index_html: str, sources: Dict[str, Path]) -> AssetManifest:
        files = [
            AssetFile(url_path=url_path, versioned_path=versioned_path(url_path, file_digest(source)))
            for url_path, source in sources.items()
        ]
        return AssetManifest(session_id=session_id, index=index_html, files=files)

    def sync(
        self,
        manifest: AssetManifest,
        sources: Dict[str, Path],
        on_status: Optional[StatusCallback] = None,
    ) -> List[AssetFile]:
        """Store the manifest and upload every checked file the store lacks; returns those files."""
        status = on_status or LOGGER.debug
        manifest_file = self.manifest_path(manifest.session_id)
        manifest_file.write_text(json.dumps(manifest.model_dump(), indent=2), encoding="utf-8")
        status(f"Manifest written for session {manifest.session_id}")

        to_check = [item for item in manifest.files if item.to_check]
        status(f"Checking {len(to_check)} files")
        needed = []
        for item in to_check:
            if self.has(item.versioned_path):
                status(f"Found {item.versioned_path}")
            else:
                needed.append(item)

        for item in needed:
            source = sources.get(item.url_path)
            if source is None:
                raise FileNotFoundError(f"No source file for {item.url_path}")
            target = self._safe_path(item.versioned_path)
            if target is None:
                raise ValueError(f"Asset path escapes the store: {item.versioned_path}")
            target.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(source, target)
            status(f"Uploaded {item.url_path} as {item.versioned_path}")
        LOGGER.info("Synced session %s: %s of %s files uploaded", manifest.session_id, len(needed), len(manifest.files))
        return needed

    def load_manifest(self, session_id: str) -> Optional[AssetManifest]:
        try:
            path = self.manifest_path(session_id)
        except ValueError:
            return None
        if not path.exists():
            return None
        try:
            return AssetManifest.model_validate_json(path.read_text(encoding="utf-8"))
        except ValueError as exc:
            LOGGER.warning("Ignoring unreadable manifest %s: %s", path, exc)
            return None

    def resolve(self, session_id: str, url_path: str) -> Optional[Path]:
        manifest = self.load_manifest(session_id)
        if manifest is None:
            return None
        versioned = manifest.file_map.get(url_path)
        if versioned is None:
            return None
        target = self._safe_path(versioned)
        if target is None or not target.is_file():
            return None
        return target


def asset_url_path(config: ZenConfig, path: Path) -> str:
    resolved = path if path.is_absolute() else config.app_root / path
    resolved = resolved.resolve()
    try:
        return resolved.relative_to(config.app_root).as_posix()
    except ValueError:
        return resolved.name


def render_index(config: ZenConfig, scripts: Iterable[str]) -> str:
    """Worker index document: the HTML template with script tags in place of ``ZEN_SCRIPTS``."""
    # Workers get an empty config; the local one may hold paths and credentials.
    tags = ["<script>window.Zen = {config: {}}</script>"]
    tags.extend(f"<script src='{script}'></script>" for script in scripts)
    return config.html_template.replace("ZEN_SCRIPTS", "\n".join(tags))


def sync_session(
    config: ZenConfig,
    store: ArtifactStore,
    on_status: Optional[StatusCallback] = None,
) -> AssetManifest:
    sources: Dict[str, Path] = {}
    for dependency in config.test_dependencies:
        path = Path(dependency)
        resolved = path if path.is_absolute() else config.app_root / path
        sources[asset_url_path(config, resolved)] = resolved
    index_html = render_index(config, sources)
    manifest = store.build_manifest(config.session_id, index_html, sources)
    store.sync(manifest, sources, on_status=on_status)
    return manifest


_artifact_store: Optional[ArtifactStore] = None


def get_artifact_store() -> ArtifactStore:
    global _artifact_store
    if _artifact_store is None:
        root = os.environ.get("ZEN_ASSET_ROOT")
        _artifact_store = ArtifactStore(Path(root) if root else None)
    return _artifact_store


def set_artifact_store(store: ArtifactStore) -> None:
    global _artifact_store
    _artifact_store = store
