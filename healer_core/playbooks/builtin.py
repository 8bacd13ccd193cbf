import logging
import re
from typing import Optional

from .base import FixContext, FixOutcome, FixPlaybook

logger = logging.getLogger("healer-core.playbooks")

DEFAULT_HTACCESS = """# BEGIN WordPress
<IfModule mod_rewrite.c>
RewriteEngine On
RewriteRule .* - [E=HTTP_AUTHORIZATION:%{HTTP:Authorization}]
RewriteBase /
RewriteRule ^index\\.php$ - [L]
RewriteCond %{REQUEST_FILENAME} !-f
RewriteCond %{REQUEST_FILENAME} !-d
RewriteRule . /index.php [L]
</IfModule>
# END WordPress
"""

MEMORY_LIMIT = "256M"
_MEMORY_DEFINE = re.compile(r"define\(\s*['\"]WP_MEMORY_LIMIT['\"]\s*,\s*['\"](\d+)([MG])['\"]\s*\);?")
_SETTINGS_ANCHORS = ("/* That's all, stop editing!", "require_once ABSPATH . 'wp-settings.php';")

_PLUGIN_PATH = re.compile(r"wp-content/plugins/([A-Za-z0-9._-]+)/")
_THEME_PATH = re.compile(r"wp-content/themes/([A-Za-z0-9._-]+)/")

# Newest first
DEFAULT_THEMES = (
    "twentytwentyfive",
    "twentytwentyfour",
    "twentytwentythree",
    "twentytwentytwo",
    "twentytwentyone",
    "twentytwenty",
    "twentynineteen",
)

THEME_OVERRIDE = ("wp-content", "mu-plugins", "wp-autohealer-theme-override.php")
THEME_OVERRIDE_TEMPLATE = """<?php
/*
 * Plugin Name: WP AutoHealer theme override
 * Description: Serves {fallback} while {broken} is failing. Delete this file to restore {broken}.
 */
add_filter( 'pre_option_template', function () {{ return '{fallback}'; }} );
add_filter( 'pre_option_stylesheet', function () {{ return '{fallback}'; }} );
"""

DISK_FULL_PERCENT = 95
DEBUG_LOG = ("wp-content", "debug.log")
CLEANUP_DIRECTORIES = (
    ("wp-content", "cache"),
    ("wp-content", "upgrade"),
)


class MaintenanceModeCleanup(FixPlaybook):
    """A .maintenance file left behind by an interrupted update."""

    name = "maintenance_mode_cleanup"
    description = "Remove a stale .maintenance file"

    async def can_apply(self, ctx: FixContext) -> bool:
        if not ctx.wp_path:
            return False
        return await self._exists(ctx, ctx.wp_file(".maintenance"))

    def hypothesis(self, ctx: FixContext) -> str:
        return "An interrupted update left .maintenance in place, keeping the site in maintenance mode"

    async def apply(self, ctx: FixContext) -> FixOutcome:
        change = await self._delete_file(ctx, ctx.wp_file(".maintenance"))
        return FixOutcome(applied=True, description="Removed stale .maintenance file", changes=[change])


class MemoryLimitRaise(FixPlaybook):
    name = "memory_limit_raise"
    description = "Raise WP_MEMORY_LIMIT in wp-config.php"

    async def can_apply(self, ctx: FixContext) -> bool:
        return bool(ctx.wp_path) and ctx.mentions("allowed memory size", "memory exhausted")

    def hypothesis(self, ctx: FixContext) -> str:
        return f"PHP is exhausting its memory limit; raising WP_MEMORY_LIMIT to {MEMORY_LIMIT}"

    async def apply(self, ctx: FixContext) -> FixOutcome:
        path = ctx.wp_file("wp-config.php")
        original = (await ctx.executor.read_file(ctx.session, path)).decode("utf-8", errors="surrogateescape")
        updated = raise_memory_limit(original)
        if updated is None:
            return FixOutcome(applied=False, description=f"WP_MEMORY_LIMIT already at least {MEMORY_LIMIT}")
        change = await self._write_file(ctx, path, updated.encode("utf-8", errors="surrogateescape"))
        return FixOutcome(applied=True, description=f"Set WP_MEMORY_LIMIT to {MEMORY_LIMIT}", changes=[change])


def raise_memory_limit(config: str) -> str | None:
    """Return wp-config.php text with the memory limit raised, or None if already high enough."""
    define = f"define( 'WP_MEMORY_LIMIT', '{MEMORY_LIMIT}' );"
    match = _MEMORY_DEFINE.search(config)
    if match:
        megabytes = int(match.group(1)) * (1024 if match.group(2) == "G" else 1)
        if megabytes >= int(MEMORY_LIMIT[:-1]):
            return None
        return config[:match.start()] + define + config[match.end():]
    for anchor in _SETTINGS_ANCHORS:
        index = config.find(anchor)
        if index != -1:
            return config[:index] + define + "\n\n" + config[index:]
    return None


class HtaccessReset(FixPlaybook):
    name = "htaccess_reset"
    description = "Replace .htaccess with the WordPress default rules"

    async def can_apply(self, ctx: FixContext) -> bool:
        if not ctx.wp_path or ctx.wordpress.multisite:
            return False
        server_error = ctx.baseline.get("status_code") == 500
        if not (server_error or ctx.mentions(".htaccess", "invalid command", "rewriteengine")):
            return False
        path = ctx.wp_file(".htaccess")
        if not await self._exists(ctx, path):
            return False
        current = await ctx.executor.read_file(ctx.session, path)
        return current != DEFAULT_HTACCESS.encode()

    def hypothesis(self, ctx: FixContext) -> str:
        return "A broken .htaccess directive is causing server errors"

    async def apply(self, ctx: FixContext) -> FixOutcome:
        change = await self._write_file(ctx, ctx.wp_file(".htaccess"), DEFAULT_HTACCESS.encode())
        return FixOutcome(applied=True, description="Reset .htaccess to WordPress defaults", changes=[change])


class PluginIsolation(FixPlaybook):
    """
    Moves the plugins directory aside so WordPress boots without plugins.
    Coarse, so it sits in a later tier than targeted fixes.
    """

    name = "plugin_isolation"
    description = "Disable all plugins by relocating wp-content/plugins"

    async def can_apply(self, ctx: FixContext) -> bool:
        if not ctx.wp_path:
            return False
        fatal = bool(ctx.baseline.get("markers", {}).get("fatal"))
        if not (fatal or ctx.mentions("wp-content/plugins", "fatal error")):
            return False
        return await self._exists(ctx, ctx.wp_file("wp-content", "plugins"), directory=True)

    def hypothesis(self, ctx: FixContext) -> str:
        return "A plugin is raising fatal errors; booting without plugins will confirm it"

    async def apply(self, ctx: FixContext) -> FixOutcome:
        plugins = ctx.wp_file("wp-content", "plugins")
        target = f"{plugins}.wph-disabled-{ctx.incident.id[:8]}"
        change = await self._move_directory(ctx, plugins, target)
        return FixOutcome(
            applied=True,
            description=f"Moved plugins directory to {target}",
            changes=[change],
            details={"moved_to": target},
        )


class PluginDeactivation(FixPlaybook):
    """
    Disables the one plugin named in the fatal error by renaming its folder.
    WordPress drops an active plugin whose main file has gone missing.
    """

    name = "plugin_deactivation"
    description = "Deactivate the plugin named in the error log"

    def _culprit(self, ctx: FixContext) -> Optional[str]:
        found = _PLUGIN_PATH.findall(ctx.diagnostics)
        return found[-1] if found else None

    async def can_apply(self, ctx: FixContext) -> bool:
        if not ctx.wp_path:
            return False
        plugin = self._culprit(ctx)
        if plugin is None or ".wph-disabled-" in plugin:
            return False
        return await self._exists(ctx, ctx.wp_file("wp-content", "plugins", plugin), directory=True)

    def hypothesis(self, ctx: FixContext) -> str:
        return f"The plugin '{self._culprit(ctx)}' is raising the fatal error in the logs"

    async def apply(self, ctx: FixContext) -> FixOutcome:
        plugin = self._culprit(ctx)
        path = ctx.wp_file("wp-content", "plugins", plugin)
        target = f"{path}.wph-disabled-{ctx.incident.id[:8]}"
        change = await self._move_directory(ctx, path, target)
        return FixOutcome(
            applied=True,
            description=f"Deactivated plugin {plugin}",
            changes=[change],
            details={"plugin": plugin, "moved_to": target},
        )


class ThemeSwitch(FixPlaybook):
    """
    Serves a bundled default theme while the active one is broken.
    The switch is a must-use plugin overriding the template options, so the
    database is never touched and deleting the file undoes it.
    """

    name = "theme_switch"
    description = "Switch to a bundled default theme"

    def _culprit(self, ctx: FixContext) -> Optional[str]:
        found = _THEME_PATH.findall(ctx.diagnostics)
        return found[-1] if found else None

    async def _fallback(self, ctx: FixContext, broken: str) -> Optional[str]:
        for theme in DEFAULT_THEMES:
            if theme != broken and await self._exists(ctx, ctx.wp_file("wp-content", "themes", theme), directory=True):
                return theme
        return None

    async def can_apply(self, ctx: FixContext) -> bool:
        if not ctx.wp_path:
            return False
        broken = self._culprit(ctx)
        if broken is None:
            return False
        if await self._exists(ctx, ctx.wp_file(*THEME_OVERRIDE)):
            return False
        if not await self._exists(ctx, ctx.wp_file("wp-content", "themes", broken), directory=True):
            return False
        return await self._fallback(ctx, broken) is not None

    def hypothesis(self, ctx: FixContext) -> str:
        return f"The active theme '{self._culprit(ctx)}' is raising the fatal error in the logs"

    async def apply(self, ctx: FixContext) -> FixOutcome:
        broken = self._culprit(ctx)
        fallback = await self._fallback(ctx, broken)
        if fallback is None:
            return FixOutcome(applied=False, description="No bundled default theme is installed")
        override = render_theme_override(broken, fallback)
        change = await self._create_file(ctx, ctx.wp_file(*THEME_OVERRIDE), override.encode())
        return FixOutcome(
            applied=True,
            description=f"Switched theme from {broken} to {fallback}",
            changes=[change],
            details={"from": broken, "to": fallback},
        )


def render_theme_override(broken: str, fallback: str) -> str:
    return THEME_OVERRIDE_TEMPLATE.format(broken=broken, fallback=fallback)


class DiskSpaceCleanup(FixPlaybook):
    """
    Frees space when the filesystem holding WordPress is full.
    Only regenerable data is removed: the debug log and the cache and
    upgrade scratch directories. The log goes first since it is backed up
    locally and frees room for the directory archives.
    """

    name = "disk_space_cleanup"
    description = "Remove the debug log and WordPress cache directories"

    async def can_apply(self, ctx: FixContext) -> bool:
        if not ctx.wp_path:
            return False
        if ctx.mentions("no space left on device", "disk full", "disk quota exceeded"):
            return await self._has_targets(ctx)
        execution = await ctx.ledger.run_template(ctx.incident.id, ctx.session, "df -P {{path}}", path=ctx.wp_path)
        usage = disk_usage_percent(execution.stdout) if execution.ok else None
        return usage is not None and usage >= DISK_FULL_PERCENT and await self._has_targets(ctx)

    async def _has_targets(self, ctx: FixContext) -> bool:
        if await self._exists(ctx, ctx.wp_file(*DEBUG_LOG)):
            return True
        for parts in CLEANUP_DIRECTORIES:
            if await self._exists(ctx, ctx.wp_file(*parts), directory=True):
                return True
        return False

    def hypothesis(self, ctx: FixContext) -> str:
        return "The disk is full, so PHP cannot write sessions, uploads or cache files"

    async def apply(self, ctx: FixContext) -> FixOutcome:
        changes = []
        log = ctx.wp_file(*DEBUG_LOG)
        if await self._exists(ctx, log):
            changes.append(await self._delete_file(ctx, log))
        for parts in CLEANUP_DIRECTORIES:
            path = ctx.wp_file(*parts)
            if await self._exists(ctx, path, directory=True):
                changes.append(await self._delete_directory(ctx, path))
        if not changes:
            return FixOutcome(applied=False, description="Nothing left to clean up")
        return FixOutcome(
            applied=True,
            description=f"Removed {len(changes)} cache or log location(s)",
            changes=changes,
            details={"removed": [c.path for c in changes]},
        )


def disk_usage_percent(df_output: str) -> Optional[int]:
    """Use% from POSIX `df -P` output, or None if it cannot be read."""
    lines = [line for line in df_output.strip().splitlines() if line.strip()]
    if len(lines) < 2:
        return None
    fields = lines[-1].split()
    if len(fields) < 5 or not fields[4].endswith("%"):
        return None
    try:
        return int(fields[4][:-1])
    except ValueError:
        return None


BUILTIN_PLAYBOOKS = {
    cls.name: cls
    for cls in (
        MaintenanceModeCleanup,
        DiskSpaceCleanup,
        MemoryLimitRaise,
        HtaccessReset,
        PluginDeactivation,
        ThemeSwitch,
        PluginIsolation,
    )
}
