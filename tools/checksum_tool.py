from __future__ import annotations

import csv
import json
import queue
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import ttkbootstrap as tb
from ttkbootstrap.dialogs import Messagebox

from plugins.base import AppContext, run_plugin_standalone
from tools.checksum_core import ChecksumConfig, ChecksumPipeline, Outcome, OutcomeStatus
from tools.checksum_errors import ChecksumError
from tools.checksum_ledger import RecordFormat
from tools.hash_providers import DEFAULT_ALGORITHM, available_algorithms, parse_key
from tools.path_reconciler import ReconcileStrategy

_STATUS_TAGS = {
    "OK": "success",
    "MISMATCH": "warning",
    "ERROR": "danger",
}

_STRATEGY_LABELS = {
    ReconcileStrategy.LAYOUT: "Match recorded layout (drive letters, root name)",
    ReconcileStrategy.COMMON_PREFIX: "Strip common prefix of recorded paths",
}


def _summary_message(summary: Dict[str, int]) -> str:
    counts = f"Total:{summary['total']} Match:{summary['match']} Mismatch:{summary['mismatch']}"
    if summary.get("cancelled"):
        message = f"Cancelled after {summary['total']} of {summary.get('planned', summary['total'])} files – {counts}"
    else:
        message = f"Completed – {counts}"
    if summary.get("collisions"):
        message += f" – {summary['collisions']} path collisions"
    return message


class _OutcomeStore:
    def __init__(self) -> None:
        self.items: List[Outcome] = []
        self.warnings: List[str] = []

    def add(self, outcome: Outcome) -> None:
        self.items.append(outcome)

    def filtered(self, status_filter: str, search_text: str) -> List[Outcome]:
        search_text = search_text.lower()
        rows = []
        for item in self.items:
            if status_filter != "All" and item.status.value.lower() != status_filter.lower():
                continue
            if search_text and search_text not in item.path.lower():
                continue
            rows.append(item)
        return rows

    def summary(self) -> Dict[str, int]:
        counts = {"total": 0, "match": 0, "mismatch": 0, "errors": 0}
        for item in self.items:
            counts["total"] += 1
            if item.status == OutcomeStatus.OK:
                counts["match"] += 1
            else:
                counts["mismatch"] += 1
                if item.status == OutcomeStatus.ERROR:
                    counts["errors"] += 1
        return counts


class ChecksumTool:
    key = "tree_checksum"
    title = "Tree Checksum"
    description = "Record a checksum list for a folder, or verify a folder against an existing list."

    def __init__(self) -> None:
        self.ctx: Optional[AppContext] = None
        self.panel: Optional[tb.Frame] = None
        self.root_var: Optional[tb.StringVar] = None
        self.list_var: Optional[tb.StringVar] = None
        self.mode_var: Optional[tb.StringVar] = None
        self.algo_var: Optional[tb.StringVar] = None
        self.key_var: Optional[tb.StringVar] = None
        self.json_var: Optional[tb.BooleanVar] = None
        self.verbose_var: Optional[tb.BooleanVar] = None
        self.strategy_var: Optional[tb.StringVar] = None
        self.summary_var: Optional[tb.StringVar] = None
        self.progress_var: Optional[tb.StringVar] = None
        self.filter_var: Optional[tb.StringVar] = None
        self.search_var: Optional[tb.StringVar] = None
        self.detail_tree = None

        self.run_button = None
        self.pause_button = None
        self.cancel_button = None

        self._worker: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._pause_event = threading.Event()
        self._pause_event.set()
        self._paused = False
        self._ui_queue: "queue.Queue[Tuple[str, Any]]" = queue.Queue()
        self._store = _OutcomeStore()

    # ------------------------------------------------------------------ UI --
    def make_panel(self, master, context: AppContext):
        import tkinter as tk
        from tkinter import filedialog

        self.ctx = context
        root = tb.Frame(master)
        self.panel = root

        paths = tb.Labelframe(root, text="Locations", padding=8)
        paths.pack(fill="x", padx=8, pady=(10, 6))
        self.root_var = tk.StringVar(value="")
        self.list_var = tk.StringVar(value="")
        tb.Label(paths, text="Folder:").grid(row=0, column=0, sticky="w")
        tb.Entry(paths, textvariable=self.root_var).grid(row=0, column=1, sticky="ew", padx=6)
        tb.Button(paths, text="Browse…", command=lambda: self._choose(self.root_var, filedialog.askdirectory)).grid(row=0, column=2)
        tb.Label(paths, text="Checksum list:").grid(row=1, column=0, sticky="w", pady=(4, 0))
        tb.Entry(paths, textvariable=self.list_var).grid(row=1, column=1, sticky="ew", padx=6, pady=(4, 0))
        tb.Button(
            paths,
            text="Browse…",
            command=lambda: self._choose(self.list_var, filedialog.asksaveasfilename),
        ).grid(row=1, column=2, pady=(4, 0))
        paths.columnconfigure(1, weight=1)

        options = tb.Labelframe(root, text="Options", padding=8)
        options.pack(fill="x", padx=8, pady=(0, 6))
        self.mode_var = tk.StringVar(value="generate")
        self.algo_var = tk.StringVar(value=DEFAULT_ALGORITHM)
        self.key_var = tk.StringVar(value="")
        self.json_var = tk.BooleanVar(value=False)
        self.verbose_var = tk.BooleanVar(value=False)
        self.strategy_var = tk.StringVar(value=_STRATEGY_LABELS[ReconcileStrategy.LAYOUT])
        mode_row = tb.Frame(options)
        mode_row.pack(fill="x")
        tb.Radiobutton(mode_row, text="Generate list", value="generate", variable=self.mode_var).pack(side="left")
        tb.Radiobutton(mode_row, text="Verify folder", value="verify", variable=self.mode_var).pack(side="left", padx=(12, 0))
        algo_row = tb.Frame(options)
        algo_row.pack(fill="x", pady=(6, 0))
        tb.Label(algo_row, text="Algorithm:").pack(side="left")
        tb.Combobox(algo_row, width=12, textvariable=self.algo_var, values=tuple(available_algorithms()), state="readonly").pack(side="left", padx=6)
        tb.Label(algo_row, text="Key (hex):").pack(side="left", padx=(12, 0))
        tb.Entry(algo_row, textvariable=self.key_var, width=40).pack(side="left", padx=6)
        tb.Checkbutton(options, text="JSON lines list", variable=self.json_var).pack(anchor="w", pady=(6, 0))
        tb.Checkbutton(options, text="Show matching files too", variable=self.verbose_var).pack(anchor="w", pady=(2, 0))
        tb.Label(options, text="Path matching when verifying:").pack(anchor="w", pady=(6, 0))
        tb.Combobox(
            options,
            textvariable=self.strategy_var,
            values=tuple(_STRATEGY_LABELS.values()),
            state="readonly",
        ).pack(anchor="w", pady=(2, 0))

        actions = tb.Frame(root)
        actions.pack(fill="x", padx=8, pady=(0, 6))
        self.run_button = tb.Button(actions, text="Run", bootstyle="success", command=self._start_run)
        self.run_button.pack(side="left")
        self.pause_button = tb.Button(actions, text="Pause", state="disabled", bootstyle="secondary", command=self._toggle_pause)
        self.pause_button.pack(side="left", padx=(6, 0))
        self.cancel_button = tb.Button(actions, text="Cancel", state="disabled", bootstyle="warning", command=self._cancel_run)
        self.cancel_button.pack(side="left", padx=(6, 0))
        self.summary_var = tk.StringVar(value="Ready.")
        self.progress_var = tk.StringVar(value="Idle")
        summary_frame = tb.Frame(actions)
        summary_frame.pack(side="right")
        tb.Label(summary_frame, textvariable=self.summary_var, bootstyle="secondary").pack(anchor="e")
        tb.Label(summary_frame, textvariable=self.progress_var, bootstyle="info").pack(anchor="e")

        details = tb.Labelframe(root, text="Files", padding=4)
        details.pack(fill="both", expand=True, padx=8, pady=(0, 8))
        filter_row = tb.Frame(details)
        filter_row.pack(fill="x", pady=(0, 4))
        self.filter_var = tk.StringVar(value="All")
        filter_combo = tb.Combobox(filter_row, width=12, textvariable=self.filter_var, state="readonly", values=("All", "Mismatch", "Error", "OK"))
        filter_combo.pack(side="left")
        filter_combo.bind("<<ComboboxSelected>>", lambda _evt: self._refresh_detail_view())
        self.search_var = tk.StringVar(value="")
        tb.Entry(filter_row, textvariable=self.search_var).pack(side="left", fill="x", expand=True, padx=(6, 0))
        self.search_var.trace_add("write", lambda *_: self._refresh_detail_view())
        tb.Button(filter_row, text="Save report…", bootstyle="secondary", command=self._save_report).pack(side="right")

        columns = ("status", "path", "detail")
        self.detail_tree = tb.Treeview(details, columns=columns, show="headings")
        self.detail_tree.heading("status", text="Status")
        self.detail_tree.heading("path", text="Path")
        self.detail_tree.heading("detail", text="Details")
        self.detail_tree.column("status", width=100, anchor="w")
        self.detail_tree.column("path", width=380, anchor="w")
        self.detail_tree.column("detail", anchor="w")
        self.detail_tree.pack(fill="both", expand=True)
        style_manager = tb.Style()
        for status, style in _STATUS_TAGS.items():
            color = getattr(getattr(style_manager, "colors", None), style, None)
            if color:
                self.detail_tree.tag_configure(status, foreground=color)
        return root

    # --------------------------------------------------------------- actions --
    def start(self, context: AppContext, targets: List[Path], argv: List[str]):
        if self.root_var is None:
            return
        for target in targets or []:
            target = Path(target)
            if target.is_dir():
                self.root_var.set(str(target))
            elif target.is_file():
                self.list_var.set(str(target))
                self.mode_var.set("verify")
        if "--verify" in (argv or []):
            self.mode_var.set("verify")

    def cleanup(self):
        self._cancel_run(wait=True)

    # ----------------------------------------------------------- UI helpers --
    def _choose(self, var, chooser):
        value = chooser()
        if value:
            var.set(value)

    def _selected_strategy(self) -> ReconcileStrategy:
        selected = self.strategy_var.get() if self.strategy_var else ""
        for strategy, label in _STRATEGY_LABELS.items():
            if selected == label:
                return strategy
        return ReconcileStrategy.LAYOUT

    def _build_config(self) -> ChecksumConfig:
        root = self.root_var.get().strip()
        list_path = self.list_var.get().strip()
        if not root:
            raise ChecksumError("Choose a folder first.")
        verify = self.mode_var.get() == "verify"
        if verify and not list_path:
            raise ChecksumError("Choose the checksum list to verify against.")
        if not list_path:
            raise ChecksumError("Choose where the checksum list should be written.")
        return ChecksumConfig(
            root=Path(root),
            list_path=Path(list_path),
            verify=verify,
            verbose=bool(self.verbose_var.get()),
            progress=True,
            record_format=RecordFormat.JSON if self.json_var.get() else RecordFormat.TEXT,
            algorithm=self.algo_var.get() or DEFAULT_ALGORITHM,
            key=parse_key(self.key_var.get()),
            strategy=self._selected_strategy(),
        )

    # -------------------------------------------------------------- Running --
    def _start_run(self):
        if self._worker and self._worker.is_alive():
            Messagebox.show_info(title=self.title, message="A run is already in progress.")
            return
        try:
            config = self._build_config()
            self._stop_event.clear()
            self._pause_event.set()
            pipeline = ChecksumPipeline(
                config,
                self._stop_event,
                self._pause_event,
                line_callback=self._enqueue_line,
                progress_callback=lambda msg: self._ui_queue.put(("progress", msg)),
                status_callback=lambda msg: self._ui_queue.put(("progress", msg)),
                result_callback=lambda outcome: self._ui_queue.put(("result", outcome)),
            )
        except ChecksumError as exc:
            Messagebox.show_error(title=self.title, message=str(exc))
            return

        self._store = _OutcomeStore()
        if self.detail_tree:
            self.detail_tree.delete(*self.detail_tree.get_children())
        self._set_summary("Running…")
        self._set_progress("Preparing")
        self.run_button.configure(state="disabled")
        self.cancel_button.configure(state="normal")
        self.pause_button.configure(state="normal", text="Pause", bootstyle="secondary")
        self._paused = False
        self._worker = threading.Thread(target=self._run_pipeline, args=(pipeline,), name="tree-checksum", daemon=True)
        self._worker.start()
        if self.panel:
            self.panel.after(100, self._poll_ui_queue)

    def _run_pipeline(self, pipeline: ChecksumPipeline) -> None:
        try:
            summary = pipeline.run()
        except (ChecksumError, OSError) as exc:
            self._ui_queue.put(("failed", str(exc)))
            return
        self._ui_queue.put(("summary", summary.as_dict()))

    def _enqueue_line(self, line: str) -> None:
        if line.startswith("WARNING: "):
            self._ui_queue.put(("warning", line[len("WARNING: "):]))

    def _poll_ui_queue(self):
        if self.panel is None:
            return
        try:
            while True:
                event, payload = self._ui_queue.get_nowait()
                if event == "result":
                    self._handle_result(payload)
                elif event == "progress":
                    self._set_progress(payload)
                elif event == "warning":
                    self._store.warnings.append(payload)
                elif event == "summary":
                    self._finish_run(payload)
                elif event == "failed":
                    self._finish_run(None)
                    Messagebox.show_error(title=self.title, message=payload)
        except queue.Empty:
            pass
        if self._worker and self._worker.is_alive():
            self.panel.after(200, self._poll_ui_queue)
        elif not self._ui_queue.empty():
            self.panel.after(50, self._poll_ui_queue)

    def _handle_result(self, outcome: Outcome):
        self._store.add(outcome)
        if self._row_visible(outcome):
            self._insert_row(outcome)
        counts = self._store.summary()
        self._set_summary(f"Progress – {counts['total']} files ({counts['match']} OK, {counts['mismatch']} mismatch)")

    def _finish_run(self, summary: Optional[Dict[str, int]]):
        if summary is not None:
            self._set_summary(_summary_message(summary))
        self._set_progress("Idle")
        self.run_button.configure(state="normal")
        self.cancel_button.configure(state="disabled")
        self.pause_button.configure(state="disabled", text="Pause", bootstyle="secondary")
        self._paused = False
        self._pause_event.set()
        if self._store.warnings:
            Messagebox.show_warning(title=self.title, message="\n".join(self._store.warnings[:20]))

    def _set_summary(self, message: str):
        if self.summary_var:
            self.summary_var.set(message)

    def _set_progress(self, message: str):
        if self.progress_var:
            self.progress_var.set(message)

    def _row_visible(self, outcome: Outcome) -> bool:
        status_filter = self.filter_var.get() if self.filter_var else "All"
        show_ok = bool(self.verbose_var and self.verbose_var.get())
        if outcome.status == OutcomeStatus.OK and not show_ok and status_filter != "OK":
            return False
        if status_filter != "All" and outcome.status.value.lower() != status_filter.lower():
            return False
        search_text = (self.search_var.get() if self.search_var else "").lower()
        return not search_text or search_text in outcome.path.lower()

    def _insert_row(self, outcome: Outcome):
        if not self.detail_tree:
            return
        self.detail_tree.insert("", "end", values=(outcome.status.value, outcome.path, outcome.detail), tags=(outcome.status.value,))

    def _refresh_detail_view(self):
        if not self.detail_tree:
            return
        self.detail_tree.delete(*self.detail_tree.get_children())
        show_ok = bool(self.verbose_var and self.verbose_var.get())
        status_filter = self.filter_var.get() if self.filter_var else "All"
        search_text = self.search_var.get() if self.search_var else ""
        for outcome in self._store.filtered(status_filter, search_text):
            if outcome.status == OutcomeStatus.OK and not show_ok and status_filter != "OK":
                continue
            self._insert_row(outcome)

    def _save_report(self):
        import tkinter.filedialog as fd

        if not self._store.items:
            Messagebox.show_info(title=self.title, message="Nothing to save yet.")
            return
        file_path = fd.asksaveasfilename(
            title="Save checksum report",
            defaultextension=".json",
            filetypes=(("JSON report", "*.json"), ("CSV report", "*.csv")),
        )
        if not file_path:
            return
        rows = [
            {"status": item.status.value, "path": item.path, "detail": item.detail}
            for item in self._store.items
            if item.status != OutcomeStatus.OK
        ]
        try:
            if file_path.endswith(".csv"):
                with open(file_path, "w", encoding="utf-8", newline="") as handle:
                    writer = csv.DictWriter(handle, fieldnames=["status", "path", "detail"])
                    writer.writeheader()
                    writer.writerows(rows)
            else:
                with open(file_path, "w", encoding="utf-8") as handle:
                    json.dump({"summary": self._store.summary(), "items": rows}, handle, ensure_ascii=False, indent=2)
            Messagebox.show_info(title=self.title, message=f"Report saved to {file_path}")
        except OSError as exc:
            Messagebox.show_error(title=self.title, message=f"Cannot save report: {exc}")

    def _cancel_run(self, wait: bool = False):
        if self._worker and self._worker.is_alive():
            self._stop_event.set()
            self._pause_event.set()
            if wait:
                self._worker.join(timeout=5)
        if self.run_button is None:
            return
        self.run_button.configure(state="normal")
        self.cancel_button.configure(state="disabled")
        self.pause_button.configure(state="disabled", text="Pause", bootstyle="secondary")
        self._paused = False

    def _toggle_pause(self):
        if not self._worker or not self._worker.is_alive():
            return
        if not self._paused:
            self._paused = True
            self._pause_event.clear()
            self.pause_button.configure(text="Resume", bootstyle="info")
            self._set_progress(f"Paused: {self.progress_var.get() if self.progress_var else ''}")
        else:
            self._paused = False
            self._pause_event.set()
            self.pause_button.configure(text="Pause", bootstyle="secondary")


PLUGIN = ChecksumTool()


def main() -> None:
    run_plugin_standalone(PLUGIN)


if __name__ == "__main__":
    main()
