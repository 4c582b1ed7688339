"""
Capture templates — declarative lists of what to back up and restore.
"""

from .schema import (
    ApplicationSettingRule,
    CaptureRule,
    FilePathRule,
    RegistryKeyRule,
    Template,
    Transform,
)
from .loader import (
    TemplateLibrary,
    dump_template,
    load_template_file,
    load_template_string,
    parse_template,
)

__all__ = [
    "ApplicationSettingRule",
    "CaptureRule",
    "FilePathRule",
    "RegistryKeyRule",
    "Template",
    "Transform",
    "TemplateLibrary",
    "dump_template",
    "load_template_file",
    "load_template_string",
    "parse_template",
]
