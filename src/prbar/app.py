"""Main menu bar application."""

import logging
import threading
import webbrowser

import rumps

from prbar.cache import format_pr_key
from prbar.config import Config, ConfigError, get_config_path, load_config
from prbar.log import setup_logging
from prbar.plugin import RunContext, acknowledge, create_context, run_once
from prbar.render import MenuLine, empty_menu

logger = logging.getLogger(__name__)


class PrbarApp(rumps.App):
    """Menu bar application showing pull requests across watched repos."""

    def __init__(self, config: Config, context: RunContext | None = None) -> None:
        """Initialize the app.

        Args:
            config: Application configuration.
            context: Run context; built from ``config`` when omitted.
        """
        super().__init__("prbar", title="⏳", quit_button=None)
        self.config = config
        self.context = context or create_context(config)
        self.lines: list[MenuLine] = empty_menu()
        self._ui_update_pending = False
        self._run_lock = threading.Lock()

        # Set up timer for polling
        self.timer = rumps.Timer(self._poll, config.refresh_interval)

        # Set up timer for UI updates on main thread (checks every 0.1s)
        self._ui_update_timer = rumps.Timer(self._ui_update_callback, 0.1)
        self._ui_update_timer.start()

    def _ui_update_callback(self, _) -> None:
        """Called periodically on main thread to check for pending UI updates."""
        if self._ui_update_pending:
            self._ui_update_pending = False
            self._do_update_menu()

    def _schedule_ui_update(self) -> None:
        """Schedule a UI update on the main thread."""
        self._ui_update_pending = True

    def _menu_item(self, line: MenuLine):
        if line.separator:
            return rumps.separator
        return rumps.MenuItem(line.text, callback=self._make_line_callback(line))

    def _do_update_menu(self) -> None:
        """Rebuild the menu from the last rendered lines (must run on main thread)."""
        self.menu.clear()

        title, *body = self.lines or empty_menu()
        # The separator under the title is implied by the menu bar itself
        if body and body[0].separator:
            body = body[1:]
        parent = None
        for line in body:
            item = self._menu_item(line)
            if line.depth == 0:
                self.menu.add(item)
                parent = item if not line.separator else None
            elif parent is not None:
                parent.add(item)

        self.menu.add(rumps.separator)
        self.menu.add(rumps.MenuItem("Check Now", callback=self._on_check_now))
        self.menu.add(rumps.separator)
        self.menu.add(rumps.MenuItem("Quit", callback=self._on_quit))

        self.title = title.text

    def _make_line_callback(self, line: MenuLine):
        """Create a callback for a menu line, or None for plain labels."""
        if line.ack is not None:
            key = format_pr_key(line.ack)

            def acknowledge_callback(_):
                acknowledge(self.context.paths, key)
                self._poll()

            return acknowledge_callback

        if line.url:
            url = line.url

            def callback(_):
                webbrowser.open(url)

            return callback
        return None

    def _poll(self, _=None) -> None:
        """Run the plugin in a background thread to avoid blocking UI."""
        thread = threading.Thread(target=self._fetch_and_update, daemon=True)
        thread.start()

    def _fetch_and_update(self) -> None:
        """Run once and keep the menu lines (runs in background thread)."""
        if not self._run_lock.acquire(blocking=False):
            logger.info("Previous run still in progress, skipping")
            return
        try:
            result = run_once(self.context)
            self.lines = result.lines
        except Exception as e:
            # On error, keep showing stale data
            logger.exception("Run failed")
            rumps.notification(
                title="prbar Error",
                subtitle="Failed to fetch PRs",
                message=str(e),
            )
        finally:
            self._run_lock.release()

        # Schedule UI update on main thread
        self._schedule_ui_update()

    def _on_check_now(self, _) -> None:
        """Handle Check Now menu item."""
        self.title = "⏳"
        self._poll()

    def _on_quit(self, _) -> None:
        """Handle Quit menu item."""
        rumps.quit_application()

    def _initial_poll(self, _) -> None:
        """Do the initial poll after app starts, then start regular timer."""
        self._startup_timer.stop()
        self.title = "⏳"
        self._poll()
        self.timer.start()

    def run(self) -> None:
        """Start the application."""
        self._do_update_menu()
        self.title = "⏳"
        # Schedule initial poll after app starts (avoids blocking menu bar icon)
        self._startup_timer = rumps.Timer(self._initial_poll, 0.5)
        self._startup_timer.start()
        super().run()


def main() -> None:
    """Entry point for the application."""
    try:
        config = load_config(get_config_path())
    except ConfigError as e:
        rumps.notification(
            title="prbar",
            subtitle="Configuration Error",
            message=str(e),
        )
        return

    setup_logging(config.log_level, config.cache_dir)
    app = PrbarApp(config)
    app.run()


if __name__ == "__main__":
    main()
