# mlxbox/services/__init__.py
"""
Service layer for MLXBox.

Services that spawn processes or pull in httpx are lazy-loaded.
Use explicit imports like:
    from mlxbox.services.local_model_server import LocalModelServerController
"""

# Fast imports - paths and errors
from .exceptions import (
    AlreadyRunningError,
    CommandFailedError,
    MissingDependencyError,
    ModelInstallError,
    RuntimeSupervisorError,
    ServerReadinessTimeoutError,
    ServerStartError,
)
from .runtime_paths import RuntimePaths, get_runtime_paths

# Lazy-loaded services via __getattr__
_LAZY_IMPORTS = {
    'RuntimeBootstrapper': 'runtime_bootstrap',
    'bootstrap': 'runtime_bootstrap',
    'LocalModelServerController': 'local_model_server',
    'get_local_model_server_controller': 'local_model_server',
    'PostTrainingManager': 'post_training',
    'get_post_training_manager': 'post_training',
    'ModelInstallManager': 'model_install',
    'resolve_executable': 'install_resolver',
    'detect_whisper': 'install_resolver',
}

# Submodules that can be accessed via __getattr__ (for patching support)
_SUBMODULES = {
    'adapter_registry',
    'endpoint_scanner',
    'install_resolver',
    'local_model_server',
    'model_install',
    'post_training',
    'runtime_bootstrap',
    'state_files',
}


def __getattr__(name: str):
    """Lazy-load service modules on first access."""
    import importlib
    if name in _SUBMODULES:
        return importlib.import_module(f'.{name}', __package__)
    if name in _LAZY_IMPORTS:
        module_name = _LAZY_IMPORTS[name]
        module = importlib.import_module(f'.{module_name}', __package__)
        return getattr(module, name)
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


__all__ = [
    'AlreadyRunningError',
    'CommandFailedError',
    'MissingDependencyError',
    'ModelInstallError',
    'RuntimeSupervisorError',
    'ServerReadinessTimeoutError',
    'ServerStartError',
    'RuntimePaths',
    'get_runtime_paths',
    'RuntimeBootstrapper',
    'bootstrap',
    'LocalModelServerController',
    'get_local_model_server_controller',
    'PostTrainingManager',
    'get_post_training_manager',
    'ModelInstallManager',
    'resolve_executable',
    'detect_whisper',
]
