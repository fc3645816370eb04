from __future__ import annotations

import json
import os
from typing import Dict, Any

try:
    import matplotlib
    matplotlib.use("Agg")
    import matplotlib.pyplot as plt
except Exception:
    plt = None

def ensure_dir(path: str) -> None:
    os.makedirs(path, exist_ok=True)

def history_to_dict(history) -> Dict[str, list]:
    """OptIterHistory (dlTrain) -> Keras-style history dict."""
    if history is None or len(history) == 0:
        return {}
    h = {"loss": [float(v) for v in history["Loss"]]}
    if "FitError" in history.columns:
        h["accuracy"] = [1.0 - float(v) for v in history["FitError"]]
    if "ValidLoss" in history.columns:
        h["val_loss"] = [float(v) for v in history["ValidLoss"]]
    if "ValidError" in history.columns:
        h["val_accuracy"] = [1.0 - float(v) for v in history["ValidError"]]
    return h

def save_history_plot(history, out_prefix: str) -> None:
    if plt is None:
        return
    h = history_to_dict(history)
    if not h:
        return

    if "loss" in h:
        plt.figure()
        plt.plot(h["loss"], label="train_loss")
        if "val_loss" in h:
            plt.plot(h["val_loss"], label="val_loss")
        plt.xlabel("epoch")
        plt.ylabel("loss")
        plt.legend()
        plt.tight_layout()
        plt.savefig(out_prefix + "_loss.png", dpi=150)
        plt.close()

    if "accuracy" in h:
        plt.figure()
        plt.plot(h["accuracy"], label="train_acc")
        if "val_accuracy" in h:
            plt.plot(h["val_accuracy"], label="val_acc")
        plt.xlabel("epoch")
        plt.ylabel("accuracy")
        plt.legend()
        plt.tight_layout()
        plt.savefig(out_prefix + "_acc.png", dpi=150)
        plt.close()

def save_json(obj: Dict[str, Any], path: str) -> None:
    with open(path, "w", encoding="utf-8") as f:
        json.dump(obj, f, ensure_ascii=False, indent=2)

def load_meta(out_dir: str) -> Dict[str, Any]:
    meta_path = os.path.join(out_dir, "meta.json")
    if not os.path.exists(meta_path):
        raise FileNotFoundError(f"meta.json not found in: {out_dir}")
    with open(meta_path, "r", encoding="utf-8") as f:
        return json.load(f)
