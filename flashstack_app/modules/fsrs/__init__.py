module_metadata = {
    'name': 'FSRS Scheduling',
    'category': 'System',
    'url_prefix': '/api/fsrs',
    'enabled': True
}


def setup_module(app):
    """Initialize the FSRS module: models, built-in parameters, optimizer pool, jobs."""
    from . import models  # noqa: F401  (register tables before create_all)
    from .services.settings_service import FSRSSettingsService
    from .services.optimizer_service import optimizer_service, register_refresh_job

    app.extensions['fsrs'] = {
        'builtins': FSRSSettingsService.build_builtin_parameters(app.config),
    }
    optimizer_service.init_app(app)
    register_refresh_job(app)


__all__ = ['setup_module', 'module_metadata']
