"""Utilities for declaratively registering application modules.

Each module is described by the blueprint it exposes and, optionally, a setup
hook that wires its extensions, jobs and models into the app.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Optional, Sequence

from flask import Blueprint, Flask
from werkzeug.utils import import_string


@dataclass(frozen=True)
class ModuleDefinition:
    """Describe how a blueprint-backed module is registered with the app."""

    import_path: str
    attribute: str
    url_prefix: Optional[str] = None
    setup_hook: Optional[str] = None
    version: str = "1.0"

    def load_blueprint(self) -> Blueprint:
        """Import and return the blueprint described by this definition."""

        module = import_string(self.import_path)
        blueprint = getattr(module, self.attribute, None)
        if not isinstance(blueprint, Blueprint):
            raise TypeError(
                "Expected attribute '%s' in '%s' to be a Flask Blueprint, got %r instead"
                % (self.attribute, self.import_path, type(blueprint))
            )
        return blueprint

    def run_setup(self, app: Flask) -> None:
        if self.setup_hook:
            import_string(self.setup_hook)(app)


def register_modules(app: Flask, modules: Sequence[ModuleDefinition]) -> None:
    """Run each module's setup hook and register its blueprint with the Flask app."""

    for module in modules:
        module.run_setup(app)
        blueprint = module.load_blueprint()
        app.register_blueprint(blueprint, url_prefix=module.url_prefix)
        app.logger.debug(
            "Registered module %s (version %s) at prefix %s",
            module.import_path,
            module.version,
            module.url_prefix or blueprint.url_prefix or "<root>",
        )


def register_default_modules(app: Flask) -> None:
    """Convenience helper that registers the built-in FlashStack modules."""

    register_modules(app, DEFAULT_MODULES)


DEFAULT_MODULES: Iterable[ModuleDefinition] = (
    ModuleDefinition(
        "flashstack_app.modules.fsrs.routes.api",
        "api_bp",
        setup_hook="flashstack_app.modules.fsrs.setup_module",
        version="1.0",
    ),
)
