"""
Manifest dependency transforms.

Rewrites Cargo.toml dependency declarations between the monorepo form
(`foo = { path = "../foo" }`) and the split form (`foo = { version = "0.3.1" }`).
Manifests are parsed with tomlkit to find what has to change; the change
itself is a targeted edit of the one key/value pair involved, so everything
else in the file is preserved byte for byte.

A split crate has no workspace to inherit from, so `workspace = true`
fields and dependencies are flattened to the root manifest's values on the
way out. On the way back they are restored wherever the split still
carries the workspace value.
"""

import logging
import posixpath
import re
from dataclasses import dataclass, field

import tomlkit
from tomlkit.exceptions import TOMLKitError

from .errors import TransformError
from .vcs import SyncDirection

logger = logging.getLogger(__name__)

MANIFEST_NAME = "Cargo.toml"
DEPENDENCY_TABLES = ("dependencies", "dev-dependencies", "build-dependencies")

_HEADER_RE = re.compile(r"^\s*(?P<open>\[\[?)(?P<key>[^\]]+)\]\]?\s*(#.*)?$")
_STRING = r"(?P<val>\"[^\"\n]*\"|'[^'\n]*')"
_ANY_STRING = r"(?:\"[^\"\n]*\"|'[^'\n]*')"


@dataclass(frozen=True)
class PackageInfo:
    """A workspace package that some split manages."""

    name: str
    path: str
    version: str


@dataclass(frozen=True)
class PackageManifest:
    """The [package] identity read from a manifest."""

    name: str | None
    version: str | None
    inherits_version: bool = False


@dataclass(frozen=True)
class TransformRule:
    """One dependency rewrite between path form and version form."""

    package: str
    section: str
    path_form: str
    version_form: str
    direction: SyncDirection

    def describe(self) -> str:
        if self.direction is SyncDirection.MONO_TO_SPLIT:
            return f"[{self.section}] {self.package}: path {self.path_form!r} -> version {self.version_form!r}"
        return f"[{self.section}] {self.package}: version {self.version_form!r} -> path {self.path_form!r}"


@dataclass(frozen=True)
class InheritRule:
    """One `workspace = true` entry flattened to, or restored from, its workspace value."""

    section: str
    key: str
    value: str
    direction: SyncDirection

    def describe(self) -> str:
        if self.direction is SyncDirection.MONO_TO_SPLIT:
            return f"[{self.section}] {self.key}: workspace -> {self.value}"
        return f"[{self.section}] {self.key}: {self.value} -> workspace"


@dataclass
class TransformResult:
    """Rewritten manifest text plus what was changed and what was skipped."""

    text: str
    rules: list[TransformRule | InheritRule] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.rules)


@dataclass(frozen=True)
class _Dependency:
    section: tuple[str, ...]
    key: str
    package: str
    value: object


def is_manifest(path: str) -> bool:
    """Check whether a repository path names a Cargo manifest."""
    return posixpath.basename(path) == MANIFEST_NAME


def _parse(text: str, path: str) -> dict:
    try:
        return tomlkit.parse(text).unwrap()
    except TOMLKitError as e:
        raise TransformError(path, f"invalid TOML: {e}") from e


def read_package(text: str, path: str = MANIFEST_NAME) -> PackageManifest:
    """Read the package name and version declared by a manifest."""
    package = _parse(text, path).get("package")
    if not isinstance(package, dict):
        return PackageManifest(None, None)
    version = package.get("version")
    if isinstance(version, dict):
        return PackageManifest(package.get("name"), None, inherits_version=bool(version.get("workspace")))
    return PackageManifest(package.get("name"), version if isinstance(version, str) else None)


def read_workspace(text: str, path: str = MANIFEST_NAME) -> dict:
    """Read the [workspace] table of a root manifest; empty when there is none."""
    workspace = _parse(text, path).get("workspace")
    return workspace if isinstance(workspace, dict) else {}


def _inherits(value: object) -> bool:
    return isinstance(value, dict) and value.get("workspace") is True


def _lookup(doc: dict, section: tuple[str, ...], key: str) -> object:
    table: object = doc
    for part in section:
        table = table.get(part) if isinstance(table, dict) else None
    return table.get(key) if isinstance(table, dict) else None


def _render_value(value: object) -> str:
    """Render a plain value as single-line TOML."""
    if isinstance(value, dict):
        return "{ " + ", ".join(f"{k} = {_render_value(v)}" for k, v in value.items()) + " }"
    return tomlkit.item(value).as_string()


def _ending(line: str) -> str:
    return line[len(line.rstrip("\r\n")) :]


def _split_key(raw: str) -> tuple[str, ...]:
    """Split a dotted TOML key, honouring quoted parts."""
    parts: list[str] = []
    buf: list[str] = []
    quote = None
    for ch in raw:
        if quote:
            if ch == quote:
                quote = None
            else:
                buf.append(ch)
        elif ch in "\"'":
            quote = ch
        elif ch == ".":
            parts.append("".join(buf).strip())
            buf = []
        else:
            buf.append(ch)
    parts.append("".join(buf).strip())
    return tuple(parts)


def _line_key(line: str) -> tuple[str, ...] | None:
    """Return the key of a `key = value` line, or None for anything else."""
    stripped = line.strip()
    if not stripped or stripped.startswith("#") or stripped.startswith("["):
        return None
    quote = None
    for i, ch in enumerate(line):
        if quote:
            if ch == quote:
                quote = None
        elif ch in "\"'":
            quote = ch
        elif ch == "=":
            return _split_key(line[:i])
    return None


def _section_name(section: tuple[str, ...]) -> str:
    return ".".join(f"'{p}'" if "." in p or " " in p else p for p in section)


def _dependencies(doc: dict) -> list[_Dependency]:
    sections: list[tuple[tuple[str, ...], dict]] = []
    for name in DEPENDENCY_TABLES:
        if isinstance(doc.get(name), dict):
            sections.append(((name,), doc[name]))
    for cfg, table in (doc.get("target") or {}).items():
        if not isinstance(table, dict):
            continue
        for name in DEPENDENCY_TABLES:
            if isinstance(table.get(name), dict):
                sections.append((("target", cfg, name), table[name]))
    deps = []
    for section, table in sections:
        for key, value in table.items():
            package = value.get("package", key) if isinstance(value, dict) else key
            deps.append(_Dependency(section, key, package, value))
    return deps


class _ManifestText:
    """Line-oriented view of a manifest used to apply targeted edits."""

    def __init__(self, text: str, path: str):
        self.path = path
        self.lines = text.splitlines(keepends=True)

    def render(self) -> str:
        return "".join(self.lines)

    def _tables(self):
        current: tuple[str, ...] = ()
        for idx, line in enumerate(self.lines):
            match = _HEADER_RE.match(line)
            if match:
                current = _split_key(match.group("key"))
                if match.group("open") == "[[":
                    current = ("[[]]",) + current
                continue
            yield idx, current

    def inline_line(self, section: tuple[str, ...], key: str) -> int | None:
        hits = [i for i, table in self._tables() if table == section and _line_key(self.lines[i]) == (key,)]
        if len(hits) > 1:
            raise TransformError(self.path, f"dependency '{key}' declared twice in [{_section_name(section)}]")
        return hits[0] if hits else None

    def table_lines(self, section: tuple[str, ...], key: str) -> list[int]:
        return [i for i, table in self._tables() if table == section + (key,)]

    def item_lines(self, section: tuple[str, ...], key: str) -> list[int]:
        """Lines of `key = ...` and dotted `key.field = ...` entries in a section."""
        hits = []
        for i, table in self._tables():
            if table != section:
                continue
            line_key = _line_key(self.lines[i])
            if line_key and line_key[0] == key:
                hits.append(i)
        return hits

    def declaration(self, dep: _Dependency) -> list[int]:
        """Line numbers holding the declaration of a dependency."""
        line = self.inline_line(dep.section, dep.key)
        if line is not None:
            return [line]
        lines = self.item_lines(dep.section, dep.key) or self.table_lines(dep.section, dep.key)
        if not lines:
            raise TransformError(
                self.path, f"cannot locate declaration of '{dep.key}' in [{_section_name(dep.section)}]"
            )
        return lines

    def replace_pair(self, lines: list[int], key: str, new_key: str, new_value: str) -> str:
        """Rewrite `key = "old"` into `new_key = "new"`, keeping separator and quote style."""
        pattern = re.compile(rf"(?<![\w-]){re.escape(key)}(?P<sep>\s*=\s*){_STRING}")
        hits = [(i, m) for i in lines for m in [pattern.search(self._code(i))] if m]
        if len(hits) != 1:
            raise TransformError(self.path, f"expected exactly one '{key}' entry, found {len(hits)}")
        i, match = hits[0]
        quote = match.group("val")[0]
        old_value = match.group("val")[1:-1]
        line = self.lines[i]
        self.lines[i] = (
            line[: match.start()] + f"{new_key}{match.group('sep')}{quote}{new_value}{quote}" + line[match.end() :]
        )
        return old_value

    def set_value(self, lines: list[int], key: str, new_value: str) -> None:
        self.replace_pair(lines, key, key, new_value)

    def add_pair(self, lines: list[int], anchor: str, key: str, value: str, before: bool = True) -> None:
        """Add `key = "value"` next to the existing `anchor = "..."` entry, in its style."""
        pattern = re.compile(rf"(?<![\w-]){re.escape(anchor)}(?P<sep>\s*=\s*){_STRING}")
        hits = [(i, m) for i in lines for m in [pattern.search(self._code(i))] if m]
        if len(hits) != 1:
            raise TransformError(self.path, f"expected exactly one '{anchor}' entry, found {len(hits)}")
        i, match = hits[0]
        quote = match.group("val")[0]
        pair = f"{key}{match.group('sep')}{quote}{value}{quote}"
        line = self.lines[i]
        line_key = _line_key(line)
        if line_key and line_key[-1] == anchor:
            # The anchor owns the line (table body or dotted key): add a sibling line.
            self.lines.insert(i if before else i + 1, line[: match.start()] + pair + (_ending(line) or "\n"))
        elif before:
            self.lines[i] = line[: match.start()] + pair + ", " + line[match.start() :]
        else:
            self.lines[i] = line[: match.end()] + ", " + pair + line[match.end() :]

    def replace_lines(self, lines: list[int], new_lines: list[str]) -> None:
        """Put new_lines where the given lines are, keeping the final line ending."""
        ending = _ending(self.lines[lines[-1]])
        for i in reversed(lines[1:]):
            del self.lines[i]
        self.lines[lines[0]] = "".join(new_lines).rstrip("\r\n") + ending

    def replace_item(self, lines: list[int], key: str, rendered: str) -> None:
        """Collapse an entry spread over lines into `key = rendered`."""
        first = self.lines[lines[0]]
        indent = first[: len(first) - len(first.lstrip())]
        self.replace_lines(lines, [f"{indent}{key} = {rendered}"])

    def drop_pair(self, lines: list[int], key: str) -> None:
        """Remove `key = "..."` from an inline table, a dotted key or a table section."""
        pair = rf"(?<![\w-]){re.escape(key)}\s*=\s*{_ANY_STRING}"
        inline = re.compile(rf"\s*,\s*{pair}|{pair}\s*,\s*")
        whole = re.compile(rf"^\s*(?:[\w\"' .-]+\.\s*)?{re.escape(key)}\s*=\s*{_ANY_STRING}\s*(#.*)?$")
        for i in lines:
            if whole.match(self.lines[i].rstrip("\r\n")):
                del self.lines[i]
                return
            match = inline.search(self._code(i))
            if match:
                line = self.lines[i]
                self.lines[i] = line[: match.start()] + line[match.end() :]
                return
        raise TransformError(self.path, f"cannot remove '{key}' entry")

    def replace_string_value(self, line_no: int, key: str, replacement: str) -> str:
        """Replace the right-hand side of `key = "..."` with replacement."""
        match = re.search(rf"=(?P<ws>\s*){_STRING}", self._code(line_no))
        if match is None:
            raise TransformError(self.path, f"cannot rewrite version string of '{key}'")
        line = self.lines[line_no]
        self.lines[line_no] = line[: match.start()] + "=" + match.group("ws") + replacement + line[match.end() :]
        return match.group("val")[1:-1]

    def _code(self, i: int) -> str:
        """The line with any trailing comment blanked out (same length)."""
        line = self.lines[i]
        quote = None
        for pos, ch in enumerate(line):
            if quote:
                if ch == quote:
                    quote = None
            elif ch in "\"'":
                quote = ch
            elif ch == "#":
                return line[:pos] + " " * (len(line) - pos)
        return line


class ManifestTransform:
    """
    Rewrites one package's manifest between monorepo and split layouts.

    packages maps every split-managed package name to its workspace location
    and version at the commit being transplanted. package_path is the
    workspace-relative directory of the manifest's own package. Packages in
    local (the other members of the same combined split) keep their path
    dependencies, since the split preserves their relative layout.

    workspace is the [workspace] table of the root manifest, used to flatten
    inherited entries. reference is the manifest as the monorepo currently
    has it; to_mono follows its declaration forms so that an unchanged
    manifest comes back as it was.
    """

    def __init__(
        self,
        packages: dict[str, PackageInfo],
        package_path: str,
        local: frozenset[str] = frozenset(),
        manifest_path: str | None = None,
        workspace: dict | None = None,
        reference: str | None = None,
    ):
        self.packages = packages
        self.package_path = package_path.strip("/")
        self.local = local
        self.manifest_path = manifest_path or posixpath.join(self.package_path, MANIFEST_NAME)
        self.workspace = workspace or {}
        self.reference = reference

    def transform(self, text: str, direction: SyncDirection) -> TransformResult:
        if direction is SyncDirection.MONO_TO_SPLIT:
            return self.to_split(text)
        return self.to_mono(text)

    def relative_path(self, package: PackageInfo) -> str:
        return posixpath.relpath(package.path.strip("/"), self.package_path or ".")

    def to_split(self, text: str) -> TransformResult:
        """Flatten workspace inheritance and replace path dependencies on managed packages with versions."""
        return self._log(self._split(text))

    def _split(self, text: str) -> TransformResult:
        doc = _parse(text, self.manifest_path)
        edit = _ManifestText(text, self.manifest_path)
        result = TransformResult(text)
        self._flatten(doc, edit, result)
        if result.rules:
            doc = _parse(edit.render(), self.manifest_path)

        for dep in _dependencies(doc):
            if not isinstance(dep.value, dict) or "path" not in dep.value:
                continue
            if dep.package in self.local:
                continue
            target = self.packages.get(dep.package)
            section = _section_name(dep.section)
            if target is None:
                result.warnings.append(
                    f"{self.manifest_path}: [{section}] {dep.key} has path "
                    f"{dep.value['path']!r} to a package no split manages; left unchanged"
                )
                continue
            lines = edit.declaration(dep)
            if "version" in dep.value:
                edit.drop_pair(lines, "path")
                lines = edit.declaration(dep)
                edit.set_value(lines, "version", target.version)
                old_path = dep.value["path"]
            else:
                old_path = edit.replace_pair(lines, "path", "version", target.version)
            result.rules.append(
                TransformRule(dep.package, section, old_path, target.version, SyncDirection.MONO_TO_SPLIT)
            )
        return self._finish(edit, result)

    def _inherited_dependency(self, shared: object, own: dict) -> dict:
        """Merge a `{ workspace = true, ... }` dependency with its [workspace.dependencies] entry."""
        merged = {"version": shared} if isinstance(shared, str) else dict(shared)
        for key, value in own.items():
            if key == "workspace":
                continue
            if key == "features":
                merged[key] = list(dict.fromkeys([*merged.get(key, []), *value]))
            else:
                merged[key] = value
        if isinstance(merged.get("path"), str):
            # [workspace.dependencies] paths are relative to the workspace root.
            merged["path"] = posixpath.relpath(merged["path"], self.package_path or ".")
        return merged

    def _flatten(self, doc: dict, edit: _ManifestText, result: TransformResult) -> None:
        inherited: list[tuple[tuple[str, ...], str, object]] = []
        package = doc.get("package")
        if isinstance(package, dict):
            shared = self.workspace.get("package") or {}
            for key, value in package.items():
                if _inherits(value):
                    inherited.append((("package",), key, shared.get(key)))
        shared_deps = self.workspace.get("dependencies") or {}
        for dep in _dependencies(doc):
            if _inherits(dep.value):
                shared = shared_deps.get(dep.key)
                value = None if shared is None else self._inherited_dependency(shared, dep.value)
                inherited.append((dep.section, dep.key, value))

        for section, key, value in inherited:
            name = _section_name(section)
            if value is None:
                result.warnings.append(
                    f"{self.manifest_path}: [{name}] {key} inherits a value the workspace "
                    "does not define; left unchanged"
                )
                continue
            lines = edit.item_lines(section, key)
            if not lines:
                result.warnings.append(
                    f"{self.manifest_path}: [{name}] {key} inherits from the workspace in table form; left unchanged"
                )
                continue
            rendered = _render_value(value)
            edit.replace_item(lines, key, rendered)
            result.rules.append(InheritRule(name, key, rendered, SyncDirection.MONO_TO_SPLIT))

    def to_mono(self, text: str) -> TransformResult:
        """Replace version requirements on managed packages with relative paths."""
        doc = _parse(text, self.manifest_path)
        edit = _ManifestText(text, self.manifest_path)
        result = TransformResult(text)
        reference = _parse(self.reference, self.manifest_path) if self.reference is not None else {}
        if reference:
            self._restore(reference, doc, edit, result)
            if result.rules:
                doc = _parse(edit.render(), self.manifest_path)
        declared = {(d.section, d.key): d.value for d in _dependencies(reference)}

        for dep in _dependencies(doc):
            target = self.packages.get(dep.package)
            if target is None or dep.package in self.local:
                continue
            section = _section_name(dep.section)
            rel = self.relative_path(target)
            form = declared.get((dep.section, dep.key))
            if isinstance(dep.value, str):
                line = edit.inline_line(dep.section, dep.key)
                if line is None:
                    raise TransformError(self.manifest_path, f"cannot locate declaration of '{dep.key}'")
                if _pins_version(form):
                    pairs = [f'path = "{rel}"', f'version = "{dep.value}"']
                    if not _path_first(form):
                        pairs.reverse()
                    replacement = "{ " + ", ".join(pairs) + " }"
                else:
                    replacement = f'{{ path = "{rel}" }}'
                old_version = edit.replace_string_value(line, dep.key, replacement)
            elif isinstance(dep.value, dict) and "path" not in dep.value and isinstance(dep.value.get("version"), str):
                unsupported = {"git", "registry", "workspace"} & dep.value.keys()
                if unsupported:
                    result.warnings.append(
                        f"{self.manifest_path}: [{section}] {dep.key} uses "
                        f"{', '.join(sorted(unsupported))}; left unchanged"
                    )
                    continue
                lines = edit.declaration(dep)
                if _pins_version(form):
                    edit.add_pair(lines, "version", "path", rel, before=_path_first(form))
                    old_version = dep.value["version"]
                else:
                    old_version = edit.replace_pair(lines, "version", "path", rel)
            else:
                continue
            result.rules.append(TransformRule(dep.package, section, rel, old_version, SyncDirection.SPLIT_TO_MONO))
        return self._log(self._finish(edit, result))

    def _restore(self, reference: dict, doc: dict, edit: _ManifestText, result: TransformResult) -> None:
        """Put `workspace = true` back where the split still carries the flattened value."""
        inherited = []
        package = reference.get("package")
        if isinstance(package, dict):
            inherited = [(("package",), key) for key, value in package.items() if _inherits(value)]
        inherited += [(d.section, d.key) for d in _dependencies(reference) if _inherits(d.value)]
        if not inherited:
            return

        expected = _parse(self._split(self.reference).text, self.manifest_path)
        source = _ManifestText(self.reference, self.manifest_path)
        for section, key in inherited:
            current = _lookup(doc, section, key)
            if current is None or current == _lookup(reference, section, key):
                continue
            name = _section_name(section)
            if current != _lookup(expected, section, key):
                result.warnings.append(
                    f"{self.manifest_path}: [{name}] {key} no longer matches the workspace value; kept as written"
                )
                continue
            lines = edit.item_lines(section, key)
            original = source.item_lines(section, key)
            if not lines or not original:
                continue
            edit.replace_lines(lines, [source.lines[i] for i in original])
            result.rules.append(InheritRule(name, key, _render_value(current), SyncDirection.SPLIT_TO_MONO))

    def _finish(self, edit: _ManifestText, result: TransformResult) -> TransformResult:
        if result.rules:
            result.text = edit.render()
            # The edit must leave a manifest tomlkit still accepts.
            _parse(result.text, self.manifest_path)
        return result

    @staticmethod
    def _log(result: TransformResult) -> TransformResult:
        for warning in result.warnings:
            logger.warning(warning)
        return result


def _pins_version(form: object) -> bool:
    """Whether a mono-side declaration carries a version next to its path."""
    return isinstance(form, dict) and "path" in form and "version" in form


def _path_first(form: dict) -> bool:
    keys = list(form)
    return keys.index("path") < keys.index("version")
