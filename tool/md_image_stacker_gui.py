#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Markdown image stacker - desktop window
CustomTkinter front end: open a note, pick an image, stack or unstack its block.
"""

from __future__ import annotations
import sys
import threading
import tkinter as tk
from pathlib import Path
from typing import List, Optional, Tuple

import customtkinter as ctk
from tkinter import filedialog, messagebox

THIS_FILE = Path(__file__).resolve()
TOOL_DIR = THIS_FILE.parent
if str(TOOL_DIR) not in sys.path:
    sys.path.insert(0, str(TOOL_DIR))

from md_image_stacker import (  # noqa: E402
    Config,
    DocumentStore,
    ImageTarget,
    StackerError,
    process_document,
    read_text,
    reference_rows,
)

APP_TITLE = "Markdown Image Stacker"

COLORS = {
    "primary": "#2563eb",
    "primary_hover": "#1d4ed8",
    "success": "#16a34a",
    "error": "#dc2626",
    "text_secondary": "#64748b",
}

ctk.set_appearance_mode("light")
ctk.set_default_color_theme("blue")


class StackerApp(ctk.CTk):
    def __init__(self, md_path: Optional[Path] = None) -> None:
        super().__init__()

        self.title(APP_TITLE)
        self.geometry("820x600")
        self.minsize(600, 420)

        self.md_path: Optional[Path] = None
        self.rows: List[Tuple[str, str]] = []
        self.store = DocumentStore()

        self.lenient_var = tk.BooleanVar(value=False)
        self.backup_var = tk.BooleanVar(value=True)
        self.status_var = tk.StringVar(value="Open a Markdown file to begin")

        self._build_ui()

        if md_path is not None and md_path.is_file():
            self._load(md_path)

    # ================================================================
    # Layout
    # ================================================================

    def _build_ui(self) -> None:
        self.grid_columnconfigure(0, weight=1)
        self.grid_rowconfigure(1, weight=1)

        bar = ctk.CTkFrame(self, height=56, corner_radius=0)
        bar.grid(row=0, column=0, sticky="ew")
        bar.grid_columnconfigure(1, weight=1)

        ctk.CTkButton(bar, text="Open…", width=90, command=self._on_open).grid(row=0, column=0, padx=12, pady=12)
        self.file_label = ctk.CTkLabel(bar, text="No file", anchor="w", text_color=COLORS["text_secondary"])
        self.file_label.grid(row=0, column=1, sticky="ew")
        ctk.CTkButton(bar, text="Reload", width=80, command=self._reload).grid(row=0, column=2, padx=12)

        body = ctk.CTkFrame(self, fg_color="transparent")
        body.grid(row=1, column=0, sticky="nsew", padx=12, pady=8)
        body.grid_columnconfigure(0, weight=1)
        body.grid_rowconfigure(0, weight=1)

        # CTk has no listbox; the plain Tk one keeps keyboard selection
        self.listbox = tk.Listbox(body, font=("Consolas", 11), activestyle="none", exportselection=False)
        self.listbox.grid(row=0, column=0, sticky="nsew")
        self.listbox.bind("<Double-Button-1>", lambda _e: self._on_run("stack"))
        scrollbar = ctk.CTkScrollbar(body, command=self.listbox.yview)
        scrollbar.grid(row=0, column=1, sticky="ns")
        self.listbox.configure(yscrollcommand=scrollbar.set)

        actions = ctk.CTkFrame(self, fg_color="transparent")
        actions.grid(row=2, column=0, sticky="ew", padx=12)

        self.stack_btn = ctk.CTkButton(
            actions, text="Stack", width=110,
            fg_color=COLORS["primary"], hover_color=COLORS["primary_hover"],
            command=lambda: self._on_run("stack"),
        )
        self.stack_btn.pack(side="left", pady=8)
        self.unstack_btn = ctk.CTkButton(actions, text="Unstack", width=110, command=lambda: self._on_run("unstack"))
        self.unstack_btn.pack(side="left", padx=8, pady=8)
        ctk.CTkCheckBox(actions, text="Absorb blank/separator lines", variable=self.lenient_var).pack(side="left", padx=12)
        ctk.CTkCheckBox(actions, text="Keep .bak", variable=self.backup_var).pack(side="left")

        status_bar = ctk.CTkFrame(self, height=32, corner_radius=0)
        status_bar.grid(row=3, column=0, sticky="ew")
        ctk.CTkLabel(status_bar, textvariable=self.status_var, font=ctk.CTkFont(size=11), anchor="w").pack(
            side="left", padx=16, pady=4
        )

    # ================================================================
    # File handling
    # ================================================================

    def _on_open(self) -> None:
        path_str = filedialog.askopenfilename(
            title="Choose a Markdown file",
            filetypes=[("Markdown files", "*.md *.markdown"), ("All files", "*.*")],
        )
        if path_str:
            self._load(Path(path_str))

    def _load(self, md_path: Path) -> None:
        self.md_path = md_path
        self.file_label.configure(text=str(md_path))
        self._reload()

    def _reload(self) -> None:
        if self.md_path is None:
            return
        try:
            text = read_text(self.md_path)
        except OSError as e:
            messagebox.showerror("Error", f"Cannot read {self.md_path.name}: {e}")
            return
        self.rows = reference_rows(text)
        self.listbox.delete(0, tk.END)
        for label, _ in self.rows:
            self.listbox.insert(tk.END, label)
        self._set_status(f"{len(self.rows)} image reference(s) in {self.md_path.name}")

    # ================================================================
    # Stack / unstack
    # ================================================================

    def _on_run(self, mode: str) -> None:
        selection = self.listbox.curselection()
        if self.md_path is None or not selection:
            messagebox.showwarning("Hint", "Select an image first")
            return
        _, locator = self.rows[selection[0]]
        cfg = Config(
            mode=mode,
            lenient=bool(self.lenient_var.get()),
            backup=bool(self.backup_var.get()),
            progress_cb=self._log_async,
        )
        self._set_busy(True)
        thread = threading.Thread(
            target=self._run_worker, args=(self.md_path, ImageTarget(src=locator), cfg), daemon=True
        )
        thread.start()

    def _run_worker(self, md_path: Path, target: ImageTarget, cfg: Config) -> None:
        try:
            result = process_document(md_path, target, cfg, self.store)
        except StackerError as e:
            self.after(0, lambda msg=str(e): self._on_failed(msg))
            return
        except Exception as e:
            self.after(0, lambda msg=f"{md_path.name}: {e}": self._on_failed(msg))
            return
        self.after(0, lambda: self._on_done(cfg.mode, result["updated"]))

    def _on_done(self, mode: str, updated: bool) -> None:
        self._set_busy(False)
        self._reload()
        if updated:
            self._set_status(f"✅ {mode} applied")
        else:
            self._set_status(f"ℹ️ Nothing to {mode} around that image")

    def _on_failed(self, message: str) -> None:
        self._set_busy(False)
        self._set_status(f"❌ {message}")
        messagebox.showerror("Error", message)

    def _set_busy(self, busy: bool) -> None:
        state = "disabled" if busy else "normal"
        self.stack_btn.configure(state=state)
        self.unstack_btn.configure(state=state)

    def _set_status(self, message: str) -> None:
        self.status_var.set(message)

    def _log_async(self, message: str) -> None:
        self.after(0, lambda: self._set_status(message))


def run_app(md_path: Optional[Path] = None) -> None:
    app = StackerApp(md_path)
    app.mainloop()


if __name__ == "__main__":
    run_app(Path(sys.argv[1]) if len(sys.argv) > 1 else None)
