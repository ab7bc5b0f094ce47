"""
Settings for a prompt library.

Settings are stored as a TOML file (pluqqy.toml) in the .pluqqy directory.
They control how pipelines are composed into the output file, which
editor opens components, and search defaults.
"""

import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import tomli_w


CONFIG_FILENAME = "pluqqy.toml"
CONFIG_VERSION = 1

DEFAULT_OUTPUT_FILENAME = "PLUQQY.md"
DEFAULT_EXPORT_PATH = "./"
DEFAULT_EDITOR = "vi"
DEFAULT_MAX_RESULTS = 100


@dataclass
class SectionConfig:
    """One section of composed output: which component type, under which heading."""
    type: str
    heading: str


def default_sections() -> list[SectionConfig]:
    return [
        SectionConfig("contexts", "## CONTEXT"),
        SectionConfig("prompts", "## PROMPTS"),
        SectionConfig("rules", "## IMPORTANT RULES"),
    ]


@dataclass
class FormattingSettings:
    show_headings: bool = True
    sections: list[SectionConfig] = field(default_factory=default_sections)

    def heading_for(self, component_type: str) -> Optional[str]:
        """Configured heading for a component type, or None."""
        for section in self.sections:
            if section.type == component_type:
                return section.heading
        return None


@dataclass
class OutputSettings:
    default_filename: str = DEFAULT_OUTPUT_FILENAME
    export_path: str = DEFAULT_EXPORT_PATH
    formatting: FormattingSettings = field(default_factory=FormattingSettings)


@dataclass
class EditorSettings:
    command: str = ""


@dataclass
class SearchSettings:
    max_results: int = DEFAULT_MAX_RESULTS


@dataclass
class Settings:
    """Complete library settings."""
    path: Path
    version: int = CONFIG_VERSION
    output: OutputSettings = field(default_factory=OutputSettings)
    editor: EditorSettings = field(default_factory=EditorSettings)
    search: SearchSettings = field(default_factory=SearchSettings)

    @property
    def config_path(self) -> Path:
        """Path to the TOML settings file."""
        return self.path / CONFIG_FILENAME

    def exists(self) -> bool:
        return self.config_path.exists()

    def output_file(self, root: Path) -> Path:
        """Default composed output file, relative to the project directory."""
        return root / self.output.export_path / self.output.default_filename

    def to_dict(self) -> dict[str, Any]:
        return {
            "settings": {"version": self.version},
            "output": {
                "default_filename": self.output.default_filename,
                "export_path": self.output.export_path,
                "formatting": {
                    "show_headings": self.output.formatting.show_headings,
                    "sections": [
                        {"type": s.type, "heading": s.heading}
                        for s in self.output.formatting.sections
                    ],
                },
            },
            "editor": {"command": self.editor.command},
            "search": {"max_results": self.search.max_results},
        }


def load_settings(library_path: Path) -> Settings:
    """
    Load settings from a library directory.

    Missing keys fall back to defaults.

    Raises:
        FileNotFoundError: If the settings file doesn't exist
        ValueError: If the settings file is invalid or too new
    """
    config_path = library_path / CONFIG_FILENAME

    if not config_path.exists():
        raise FileNotFoundError(f"Settings not found: {config_path}")

    try:
        with open(config_path, "rb") as f:
            data = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ValueError(f"Invalid settings file {config_path}: {e}") from e

    version = data.get("settings", {}).get("version", 1)
    if version > CONFIG_VERSION:
        raise ValueError(f"Settings version {version} is newer than supported ({CONFIG_VERSION})")

    output = data.get("output", {})
    formatting = output.get("formatting", {})
    sections = [
        SectionConfig(type=str(s.get("type", "")).lower(), heading=str(s.get("heading", "")))
        for s in formatting.get("sections", [])
        if isinstance(s, dict) and s.get("type")
    ]

    return Settings(
        path=library_path,
        version=version,
        output=OutputSettings(
            default_filename=output.get("default_filename") or DEFAULT_OUTPUT_FILENAME,
            export_path=output.get("export_path") or DEFAULT_EXPORT_PATH,
            formatting=FormattingSettings(
                show_headings=bool(formatting.get("show_headings", True)),
                sections=sections or default_sections(),
            ),
        ),
        editor=EditorSettings(command=data.get("editor", {}).get("command", "")),
        search=SearchSettings(
            max_results=int(data.get("search", {}).get("max_results", DEFAULT_MAX_RESULTS)),
        ),
    )


def save_settings(settings: Settings) -> None:
    """
    Save settings to the library directory.

    Creates the directory if it doesn't exist.
    """
    settings.path.mkdir(parents=True, exist_ok=True)
    with open(settings.config_path, "wb") as f:
        tomli_w.dump(settings.to_dict(), f)


def load_or_create_settings(library_path: Path) -> Settings:
    """
    Load existing settings or create a file with defaults.

    This is the main entry point for settings management.
    """
    if (library_path / CONFIG_FILENAME).exists():
        return load_settings(library_path)
    settings = Settings(path=library_path)
    save_settings(settings)
    return settings


def load_settings_or_default(library_path: Path) -> Settings:
    """Load settings if present, else return defaults without writing anything."""
    if (library_path / CONFIG_FILENAME).exists():
        return load_settings(library_path)
    return Settings(path=library_path)
