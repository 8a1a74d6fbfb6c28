#!/usr/bin/env python3
"""
Filename and layout constants for appctl.

CRITICAL: This is the SINGLE SOURCE OF TRUTH for all on-disk names.
All modules MUST import from this file instead of using hardcoded strings.

Layout (relative to the appctl root):
- appctl.toml                   = optional settings file
- secrets/seed                  = root seed for secret derivation
- state/registry.json           = installed apps registry (+ .lock marker)
- repos/<repo>/<app>/           = app source definitions
- app-data/<app>/               = installed app data directories
- compose/                      = shared compose fragments
- tor/data/app-<app>/hostname   = hidden service address files
"""

# ============================================================================
# Root-level layout
# ============================================================================

SETTINGS_FILE = 'appctl.toml'
SETTINGS_SECTION = 'appctl'
DEFAULT_ROOT = '/opt/appctl'

SEED_DIR = 'secrets'
SEED_FILE = 'seed'

STATE_DIR = 'state'
REGISTRY_FILE = 'registry.json'
LOCK_SUFFIX = '.lock'

REPOS_DIR = 'repos'
APP_DATA_DIR = 'app-data'
COMPOSE_FRAGMENTS_DIR = 'compose'
TOR_DATA_DIR = 'tor/data'
HIDDEN_SERVICE_FILE = 'hostname'

# ============================================================================
# Per-app files (CANONICAL - DO NOT HARDCODE)
# ============================================================================

APP_MANIFEST = 'app.toml'
APP_SETTINGS = 'settings.toml'
APP_COMPOSE = 'docker-compose.yml'
APP_EXPORTS = 'exports.toml.j2'
APP_HOOKS_DIR = 'hooks'
TEMPLATE_SUFFIX = '.j2'

# ============================================================================
# Compose layering
# ============================================================================

PROXY_SERVICE_NAME = 'app_proxy'
PROXY_FRAGMENT = 'app-proxy.yml'
TOR_FRAGMENT = 'tor.yml'
COMMON_FRAGMENT = 'common.yml'

# ============================================================================
# Registry document keys
# ============================================================================

REGISTRY_INSTALLED_KEY = 'installedApps'
REGISTRY_ORIGIN_KEY = 'appOrigin'

# ============================================================================
# Hidden service placeholders
# ============================================================================

HIDDEN_SERVICE_DISABLED = 'not-enabled.onion'
HIDDEN_SERVICE_PENDING = 'notyetset.onion'
HIDDEN_SERVICE_VIRTUAL_PORT = 80

# ============================================================================
# Fan-out
# ============================================================================

FAN_OUT_TOKEN = 'all'


def hidden_service_dir_name(app_id: str) -> str:
    """
    Directory name tor uses for an app's hidden service.

    Examples:
        >>> hidden_service_dir_name('nextcloud')
        'app-nextcloud'
    """
    return f'app-{app_id}'


def proxy_hostname(app_id: str) -> str:
    """
    Container hostname of an app's proxy sidecar.

    Examples:
        >>> proxy_hostname('nextcloud')
        'nextcloud_app_proxy_1'
    """
    return f'{app_id}_{PROXY_SERVICE_NAME}_1'


def rendered_template_name(template_name: str) -> str:
    """
    Get the output filename for a ``.j2`` template.

    Examples:
        >>> rendered_template_name('config.ini.j2')
        'config.ini'
    """
    if template_name.endswith(TEMPLATE_SUFFIX):
        return template_name[:-len(TEMPLATE_SUFFIX)]
    return template_name
