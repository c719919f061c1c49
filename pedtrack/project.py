"""
Project context: resolves files referenced by a project relative to the
project file and round-trips component settings as JSON.
"""

import json
import os
from typing import Dict, List, Optional

from . import config
from .utils import atomic_write


def parse_version(version: str) -> List[int]:
    parts = version.strip().split(".")
    if len(parts) == 2:
        parts.append("0")
    if len(parts) != 3:
        raise ValueError(f"version '{version}' does not have 2 or 3 parts")
    try:
        return [int(p) for p in parts]
    except ValueError:
        raise ValueError(f"version '{version}' has non-numeric parts") from None


def newer_than_version(q1: str, q2: str) -> bool:
    """True if version ``q1`` is strictly newer than ``q2``; 'x.y' counts as 'x.y.0'."""
    return parse_version(q1) > parse_version(q2)


class ProjectContext:
    def __init__(self, project_file: Optional[str] = None):
        self.project_file = os.path.abspath(project_file) if project_file else None

    @property
    def project_dir(self) -> str:
        if self.project_file is None:
            return os.getcwd()
        return os.path.dirname(self.project_file)

    def existing_file(self, file_list: str) -> Optional[str]:
        """
        First existing file of the ';'-separated ``file_list``. Each entry is
        tried as given, stripped of surrounding blanks and relative to the
        project directory. Returns None if nothing exists.
        """
        for entry in file_list.split(";"):
            for candidate in (entry, entry.strip()):
                if not candidate:
                    continue
                if os.path.isfile(candidate):
                    return candidate
                if not os.path.isabs(candidate):
                    rel = os.path.join(self.project_dir, candidate)
                    if os.path.isfile(rel):
                        return os.path.normpath(rel)
        return None

    def file_list(self, file_name: str) -> str:
        """'relative;absolute' form of ``file_name`` as stored in project files."""
        abs_path = os.path.abspath(os.path.join(self.project_dir, file_name))
        rel_path = os.path.relpath(abs_path, self.project_dir)
        return f"{rel_path};{abs_path}"

    def save_settings(self, path: str, components: Dict[str, object]):
        """Writes ``{name: component.get_settings()}`` plus the program version."""
        data = {"version": config.VERSION}
        for name, component in components.items():
            data[name] = component.get_settings()
        with atomic_write(path) as f:
            json.dump(data, f, indent=2)
        print(f"[INFO] Settings saved to: {path}")

    def load_settings(self, path: str, components: Dict[str, object]) -> str:
        """Applies stored settings to ``components``; returns the version that wrote the file."""
        resolved = self.existing_file(path)
        if resolved is None:
            raise FileNotFoundError(f"Settings file not found: {path}")
        with open(resolved, "r") as f:
            data = json.load(f)
        version = str(data.get("version", "0.0.0"))
        if newer_than_version(version, config.VERSION):
            print(f"[WARNING] Settings were written by newer version {version} (this is {config.VERSION}).")
        for name, component in components.items():
            if name in data:
                component.set_settings(data[name])
            else:
                print(f"[WARNING] No settings for '{name}' in {resolved}")
        return version
