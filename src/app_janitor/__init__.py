"""!
@brief App Janitor package root.
@details Modules under this namespace detect installed Windows components
(capabilities, optional features, AppX packages and external applications),
uninstall them through WinGet, Chocolatey or registry uninstallers, and remove
them through generated PowerShell scripts that can be persisted as scheduled
tasks.
"""

__all__ = [
    "main",
    "main_config",
    "catalog",
    "coordinator",
    "script_store",
    "bulk_script",
    "dedicated_scripts",
    "tasks_services",
    "detect",
    "inventory",
    "matching",
    "package_managers",
    "uninstall_resolver",
    "powershell",
    "registry_tools",
    "elevation",
    "exec_utils",
    "logging_ext",
    "cancellation",
    "models",
    "errors",
    "constants",
    "version",
]
