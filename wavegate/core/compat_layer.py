"""Compatibility Layer Generator: deprecated forwarding shims.

When a wave renames or relocates a symbol while dependent code in a
later wave still uses the old name, a thin shim exposing the old name is
appended to the changed file.  The shim is removed once the dependent's
own wave completes.

Shims live between marker comments so they can be stripped exactly::

    # wavegate:shim:begin sh-1a2b3c4d5e6f
    ...
    # wavegate:shim:end sh-1a2b3c4d5e6f
"""

from __future__ import annotations

import logging
import posixpath
import re
import uuid
from pathlib import PurePosixPath

from pydantic import BaseModel, ConfigDict, Field

from wavegate.collaborators.protocols import Parser, Workspace
from wavegate.core.risk_assessor import detect_language
from wavegate.models.changes import FileChange, TransformationKind
from wavegate.models.plan import TransformationPlan, Wave
from wavegate.models.verification import StructuralRepresentation

logger = logging.getLogger(__name__)

SUPPORTED_LANGUAGES = frozenset({"python", "typescript", "javascript", "go"})

_SHIM_BLOCK = re.compile(
    r"\n?^(?:#|//) wavegate:shim:begin (?P<id>\S+)\n.*?^(?:#|//) wavegate:shim:end (?P=id)\n?",
    re.MULTILINE | re.DOTALL,
)


class CompatibilityShim(BaseModel):
    """One forwarding alias from ``old_name`` to ``new_name``."""

    model_config = ConfigDict(frozen=True)

    shim_id: str = Field(default_factory=lambda: f"sh-{uuid.uuid4().hex[:12]}")
    path: str
    language: str
    old_name: str
    new_name: str
    source_module: str = ""  # set for relocations: where new_name now lives
    source_wave_id: str
    remove_after_wave_id: str = ""
    dependent_paths: list[str] = []
    reverse: bool = False  # installed by a rollback, pointing new -> old
    code: str = ""


def strip_shims(content: str, shim_id: str | None = None) -> str:
    """Remove shim blocks from *content*: one by id, or all."""
    def _drop(match: re.Match[str]) -> str:
        if shim_id is None or match.group("id") == shim_id:
            return ""
        return match.group(0)

    return _SHIM_BLOCK.sub(_drop, content)


def _module_name(path: str) -> str:
    p = PurePosixPath(path)
    parts = list(p.with_suffix("").parts)
    if parts and parts[-1] == "__init__":
        parts = parts[:-1]
    return ".".join(parts)


def _relative_import(from_path: str, to_path: str) -> str:
    rel = posixpath.relpath(
        str(PurePosixPath(to_path).with_suffix("")), str(PurePosixPath(from_path).parent)
    )
    return rel if rel.startswith(".") else f"./{rel}"


class CompatibilityLayerGenerator:
    """Detects renamed/moved symbols and renders language-specific shims.

    Parameters
    ----------
    parser:
        Parser capability used to list each file's symbols.
    """

    def __init__(self, parser: Parser) -> None:
        self._parser = parser

    # ------------------------------------------------------------------
    # Detection
    # ------------------------------------------------------------------

    def _symbols(self, content: str | None, language: str) -> StructuralRepresentation | None:
        if content is None:
            return None
        try:
            return self._parser.parse(content, language)
        except Exception as exc:  # noqa: BLE001 - parser is an external capability
            logger.debug("Cannot list symbols (%s): %s", language, exc)
            return None

    def detect_renames(self, change: FileChange) -> list[tuple[str, str]]:
        """(old, new) pairs for symbols renamed within one file."""
        language = detect_language(change.path)
        before = self._symbols(change.before_content, language)
        after = self._symbols(change.after_content, language)
        if before is None or after is None:
            return []
        removed = [s for s in before.symbols if s not in after.symbols]
        added = [s for s in after.symbols if s not in before.symbols]

        # Positional pairing uses the order before any signature match.
        positional = list(added) if len(removed) == len(added) else []
        pairs: list[tuple[str, str]] = []
        for index, old in enumerate(removed):
            old_fn = before.functions.get(old)
            match = next(
                (
                    new for new in added
                    if old_fn is not None
                    and (new_fn := after.functions.get(new)) is not None
                    and new_fn.params == old_fn.params
                ),
                None,
            )
            if match is None and positional:
                match = positional[index]
            if match is not None and match in added:
                added.remove(match)
                pairs.append((old, match))
        return pairs

    def detect_moves(self, changes: list[FileChange]) -> list[tuple[str, str, str]]:
        """(symbol, from_path, to_path) for symbols relocated between files."""
        removed: dict[str, str] = {}
        added: dict[str, str] = {}
        for change in changes:
            language = detect_language(change.path)
            before = self._symbols(change.before_content, language)
            after = self._symbols(change.after_content, language)
            before_syms = set(before.symbols) if before else set()
            after_syms = set(after.symbols) if after else set()
            for sym in before_syms - after_syms:
                removed.setdefault(sym, change.path)
            for sym in after_syms - before_syms:
                added.setdefault(sym, change.path)
        return sorted(
            (sym, removed[sym], added[sym])
            for sym in removed
            if sym in added and added[sym] != removed[sym]
        )

    # ------------------------------------------------------------------
    # Planning
    # ------------------------------------------------------------------

    def plan_shims(self, plan: TransformationPlan, wave: Wave) -> list[CompatibilityShim]:
        """Shims needed after *wave* completes, for dependents in later waves."""
        later: dict[str, tuple[str, FileChange]] = {}  # path -> (wave_id, change)
        for other in plan.waves[wave.order + 1:]:
            for batch in other.batches:
                for change in batch.files:
                    later[change.path] = (other.wave_id, change)

        changes = [c for b in wave.batches for c in b.files]
        shims: list[CompatibilityShim] = []

        def dependents_of(path: str) -> list[str]:
            return sorted(p for p, (_, change) in later.items() if path in change.depends_on)

        def last_wave(dependents: list[str]) -> str:
            return max((later[d][0] for d in dependents), key=lambda w: plan.get_wave(w).order)

        for change in changes:
            if change.transformation_kind != TransformationKind.RENAME_SYMBOL or change.is_deletion:
                continue
            dependents = dependents_of(change.path)
            if not dependents:
                continue
            after = self._symbols(change.after_content, detect_language(change.path))
            for old, new in self.detect_renames(change):
                shim = self.build_shim(
                    change.path, old, new, wave.wave_id,
                    remove_after_wave_id=last_wave(dependents),
                    dependent_paths=dependents,
                    is_function=after is not None and new in after.functions,
                )
                if shim is not None:
                    shims.append(shim)

        moves = self.detect_moves(
            [c for c in changes if c.transformation_kind == TransformationKind.MOVE_SYMBOL]
        )
        for symbol, from_path, to_path in moves:
            dependents = dependents_of(from_path)
            if not dependents:
                continue
            shim = self.build_shim(
                from_path, symbol, symbol, wave.wave_id,
                source_module=to_path,
                remove_after_wave_id=last_wave(dependents),
                dependent_paths=dependents,
            )
            if shim is not None:
                shims.append(shim)
        return shims

    # ------------------------------------------------------------------
    # Rendering
    # ------------------------------------------------------------------

    def build_shim(
        self,
        path: str,
        old_name: str,
        new_name: str,
        source_wave_id: str,
        *,
        source_module: str = "",
        remove_after_wave_id: str = "",
        dependent_paths: list[str] | None = None,
        reverse: bool = False,
        is_function: bool = True,
    ) -> CompatibilityShim | None:
        """Render a shim, or None when the language is unsupported."""
        language = detect_language(path)
        if language not in SUPPORTED_LANGUAGES:
            logger.warning("No shim template for %s (%s); %s left unaliased", path, language, old_name)
            return None
        shim = CompatibilityShim(
            path=path,
            language=language,
            old_name=old_name,
            new_name=new_name,
            source_module=source_module,
            source_wave_id=source_wave_id,
            remove_after_wave_id=remove_after_wave_id,
            dependent_paths=dependent_paths or [],
            reverse=reverse,
        )
        return shim.model_copy(update={"code": self._render(shim, path, is_function)})

    def _render(self, shim: CompatibilityShim, path: str, is_function: bool) -> str:
        old, new = shim.old_name, shim.new_name
        note = f"removed after {shim.remove_after_wave_id}" if shim.remove_after_wave_id else "temporary"

        if shim.language == "python":
            marker = "#"
            if shim.source_module:
                body = [
                    f"from {_module_name(shim.source_module)} import {new} as {old}"
                    f"  # deprecated: {note}",
                ]
            elif is_function:
                body = [
                    f"def {old}(*args, **kwargs):",
                    f'    """Deprecated alias for {new} ({note})."""',
                    "    import warnings",
                    "",
                    f'    warnings.warn("{old} is deprecated; use {new}", DeprecationWarning, stacklevel=2)',
                    f"    return {new}(*args, **kwargs)",
                ]
            else:
                body = [f"{old} = {new}  # deprecated: {note}"]
        elif shim.language in ("typescript", "javascript"):
            marker = "//"
            if shim.source_module:
                body = [
                    f"/** @deprecated {note} */",
                    f'export {{ {new} as {old} }} from "{_relative_import(path, shim.source_module)}";',
                ]
            else:
                body = [f"/** @deprecated use {new} ({note}) */", f"export const {old} = {new};"]
        else:  # go
            marker = "//"
            body = [f"// Deprecated: use {new} ({note}).", f"var {old} = {new}"]

        return "\n".join(
            [f"{marker} wavegate:shim:begin {shim.shim_id}", *body,
             f"{marker} wavegate:shim:end {shim.shim_id}"]
        ) + "\n"

    # ------------------------------------------------------------------
    # Install / remove
    # ------------------------------------------------------------------

    def install(self, shim: CompatibilityShim, workspace: Workspace) -> None:
        content = workspace.read(shim.path)
        if content is None:
            raise FileNotFoundError(f"Cannot install shim {shim.shim_id}: {shim.path} is absent")
        if f"wavegate:shim:begin {shim.shim_id}" in content:
            return
        workspace.write(shim.path, f"{content}\n{shim.code}")
        logger.info("Installed shim %s: %s -> %s in %s",
                    shim.shim_id, shim.old_name, shim.new_name, shim.path)

    def remove(self, shim: CompatibilityShim, workspace: Workspace) -> bool:
        """Strip the shim from its file; False if it was not present."""
        content = workspace.read(shim.path)
        if content is None or f"wavegate:shim:begin {shim.shim_id}" not in content:
            return False
        workspace.write(shim.path, strip_shims(content, shim.shim_id))
        logger.info("Removed shim %s from %s", shim.shim_id, shim.path)
        return True
