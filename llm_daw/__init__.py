"""llm-daw — project model, persistence and live MIDI recording core."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("llm-daw")
except PackageNotFoundError:
    # Dev checkout without installed metadata: read pyproject.toml directly
    try:
        import tomllib
        from pathlib import Path

        _toml = Path(__file__).resolve().parent.parent / "pyproject.toml"
        with open(_toml, "rb") as f:
            __version__ = tomllib.load(f)["project"]["version"]
    except Exception:
        __version__ = "0.0.0-dev"
