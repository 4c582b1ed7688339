"""
Template loading, validation, and discovery.

Loading is all-or-nothing: a template either validates completely or
raises TemplateValidationError listing every problem. Nothing is read
from or written to the captured system while loading.

TemplateLibrary searches three locations in priority order:
1. User templates:    ~/.melody/templates/  (or $MELODY_HOME/templates)
2. Extra directories passed by the caller
3. Built-in templates shipped with the package
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

import yaml
from pydantic import ValidationError

from ..errors import TemplateValidationError
from ..paths import slugify
from .schema import Template

logger = logging.getLogger("melody.templates")

# Built-in templates ship alongside this module
_BUILTIN_DIR = Path(__file__).parent / "builtins"

TEMPLATE_SUFFIXES = (".yaml", ".yml")


def _format_errors(exc: ValidationError) -> list[str]:
    """Flatten pydantic errors into ``location: message`` lines."""
    problems = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()))
        msg = err.get("msg", "invalid value")
        if msg.startswith("Value error, "):
            msg = msg[len("Value error, "):]
        problems.append(f"{loc}: {msg}" if loc else msg)
    return problems


def parse_template(data: Any, source: Optional[str] = None) -> Template:
    """Validate a parsed template mapping.

    Args:
        data: Mapping as produced by ``yaml.safe_load``.
        source: Where the data came from, for error messages.

    Raises:
        TemplateValidationError: If anything is wrong.
    """
    if not isinstance(data, dict):
        raise TemplateValidationError(
            [f"expected a mapping at the top level, got {type(data).__name__}"],
            source=source,
        )
    try:
        return Template.model_validate(data)
    except ValidationError as exc:
        raise TemplateValidationError(_format_errors(exc), source=source) from exc


def load_template_string(text: str, source: Optional[str] = None) -> Template:
    """Parse and validate a YAML template document."""
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise TemplateValidationError([f"invalid YAML: {exc}"], source=source) from exc
    return parse_template(data, source=source)


def load_template_file(path: Path | str) -> Template:
    """Parse and validate a template file.

    Raises:
        TemplateValidationError: Unreadable file or invalid template.
    """
    p = Path(path).expanduser()
    try:
        text = p.read_text(encoding="utf-8")
    except OSError as exc:
        raise TemplateValidationError([f"cannot read template: {exc}"], source=str(p)) from exc
    return load_template_string(text, source=str(p))


def dump_template(template: Template) -> str:
    """Render a template back to YAML."""
    data = template.model_dump(mode="json", exclude_none=True, exclude_defaults=True)
    data.setdefault("name", template.name)
    data.setdefault("version", template.version)
    data["rules"] = [
        r.model_dump(mode="json", exclude_none=True) for r in template.rules
    ]
    return yaml.dump(data, default_flow_style=False, sort_keys=False)


class TemplateLibrary:
    """Discovers templates on disk.

    Args:
        home: Storage root (templates live in ``<home>/templates``).
        extra_dirs: Additional directories, searched after the user's.
        include_builtins: Whether to search the shipped templates.
    """

    def __init__(
        self,
        home: Optional[Path] = None,
        extra_dirs: Iterable[Path] = (),
        include_builtins: bool = True,
    ) -> None:
        self._home = (home or Path("~/.melody")).expanduser()
        self._extra = [Path(d).expanduser() for d in extra_dirs]
        self._include_builtins = include_builtins
        self._cache: Dict[str, Template] = {}
        self._paths: Dict[str, Path] = {}
        self.errors: Dict[Path, TemplateValidationError] = {}

    @property
    def search_paths(self) -> List[Path]:
        """Template directories in priority order."""
        paths = [self._home / "templates", *self._extra]
        if self._include_builtins:
            paths.append(_BUILTIN_DIR)
        return paths

    def scan(self) -> Dict[str, Template]:
        """Load every template in the search paths.

        Earlier directories win name collisions. Invalid files are
        logged, remembered in ``errors``, and skipped.

        Returns:
            Dict mapping template name to validated Template.
        """
        found: Dict[str, Template] = {}
        paths: Dict[str, Path] = {}
        self.errors = {}

        # Reverse so built-ins load first, then get overridden
        for search_dir in reversed(self.search_paths):
            if not search_dir.is_dir():
                continue
            for path in sorted(search_dir.iterdir()):
                if path.suffix not in TEMPLATE_SUFFIXES or not path.is_file():
                    continue
                try:
                    template = load_template_file(path)
                except TemplateValidationError as exc:
                    logger.warning("Skipping %s: %s", path, exc)
                    self.errors[path] = exc
                    continue
                found[template.name] = template
                paths[template.name] = path

        self._cache = found
        self._paths = paths
        return found

    def list_templates(self) -> List[Template]:
        """All discovered templates sorted by name."""
        if not self._cache:
            self.scan()
        return sorted(self._cache.values(), key=lambda t: t.name)

    def get(self, name: str) -> Optional[Template]:
        if not self._cache:
            self.scan()
        return self._cache.get(name)

    def path_of(self, name: str) -> Optional[Path]:
        if not self._cache:
            self.scan()
        return self._paths.get(name)

    def find(self, name_or_path: str) -> Template:
        """Load a template by file path or by library name.

        Raises:
            TemplateValidationError: Not found, or invalid.
        """
        candidate = Path(name_or_path).expanduser()
        if candidate.suffix in TEMPLATE_SUFFIXES and candidate.exists():
            return load_template_file(candidate)
        template = self.get(name_or_path)
        if template is None:
            raise TemplateValidationError(
                [f"no template named '{name_or_path}' in {', '.join(map(str, self.search_paths))}"],
            )
        return template

    def save(self, template: Template) -> Path:
        """Write a template into the user template directory."""
        target_dir = self._home / "templates"
        target_dir.mkdir(parents=True, exist_ok=True)
        target = target_dir / f"{slugify(template.name)}.yaml"
        target.write_text(dump_template(template), encoding="utf-8")
        self._cache[template.name] = template
        self._paths[template.name] = target
        return target
