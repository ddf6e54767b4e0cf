from __future__ import annotations
from dataclasses import dataclass
from pathlib import Path
from typing import List, Protocol, Optional, Any, Tuple


def _parse_standalone_argv(argv: List[str]) -> Tuple[List[Path], List[str]]:
    """Split CLI arguments into targets and passthrough flags.

    ``--target`` may be repeated; bare positional arguments are treated as
    targets too, so a folder or checksum list can be dropped onto the
    executable. Any other ``--flag`` is handed to the tool untouched.
    """

    targets: List[Path] = []
    extra: List[str] = []
    it = iter(argv)
    for arg in it:
        if arg == "--target":
            value = next(it, None)
            if value:
                targets.append(Path(value).expanduser())
        elif arg.startswith("--"):
            extra.append(arg)
        else:
            targets.append(Path(arg).expanduser())
    return targets, extra


class ToolPlugin(Protocol):
    key: str
    title: str
    description: str

    def make_panel(self, master, context: "AppContext") -> Any:
        """Build and return a GUI panel for this tool."""

    def start(self, context: "AppContext", targets: List[Path], argv: List[str]) -> None:
        """Invoked on app start with any CLI targets."""

    def cleanup(self) -> None:
        """Called on shutdown."""


@dataclass
class AppContext:
    app_name: str
    version: str
    platform: str
    resource_dir: Path
    ui_mode: str = "standard"


def run_plugin_standalone(plugin: "ToolPlugin", argv: Optional[List[str]] = None) -> None:
    """Open a tool panel in its own ttkbootstrap window and run its lifecycle."""

    import platform
    import sys

    import ttkbootstrap as tb
    from ttkbootstrap.dialogs import Messagebox

    argv = list(sys.argv[1:] if argv is None else argv)
    targets, extra = _parse_standalone_argv(argv)

    resource_root = Path(getattr(sys, "_MEIPASS", Path(__file__).resolve().parent.parent))
    ctx = AppContext(
        app_name=getattr(plugin, "title", getattr(plugin, "key", "Tool")),
        version=getattr(plugin, "version", "standalone"),
        platform=platform.system(),
        resource_dir=resource_root,
    )

    window = tb.Window(title=ctx.app_name, themename="darkly")
    window.geometry("1000x700")
    window.resizable(True, True)

    container = tb.Frame(window, padding=8)
    container.pack(fill="both", expand=True)

    panel = plugin.make_panel(container, ctx)
    if hasattr(panel, "pack"):
        panel.pack(fill="both", expand=True)

    def _start_tool():
        try:
            plugin.start(ctx, targets, extra)
        except Exception as exc:  # pragma: no cover - GUI error path
            Messagebox.show_error(message=str(exc), title="Tool start error")

    def _on_close():
        try:
            plugin.cleanup()
        finally:
            window.destroy()

    window.after(50, _start_tool)
    window.protocol("WM_DELETE_WINDOW", _on_close)
    window.mainloop()
