from __future__ import annotations

import argparse
import sys
from typing import Dict, List

import pandas as pd

from .data import LABEL_COL, load_images, resize_images
from .session import CASConfig, add_cas_args, connect, load_actionsets
from .train_common import PRED_COL, PROB_PREFIX, fetch_scored, load_tables, score
from .utils import load_meta


def class_confidence(scored: pd.DataFrame, classes: List[str]) -> Dict[str, dict]:
    stats = {c: {"total": 0, "correct": 0, "conf_sum": 0.0} for c in classes}
    skipped = set()
    for _, row in scored.iterrows():
        cls = row[LABEL_COL]
        if cls not in stats:
            if cls not in skipped:
                print(f"⚠️ Skip unknown class: {cls}")
                skipped.add(cls)
            continue
        pred = row[PRED_COL]
        stats[cls]["total"] += 1
        if pred == cls:
            stats[cls]["correct"] += 1
            stats[cls]["conf_sum"] += float(row.get(PROB_PREFIX + pred, 0.0))

    for s in stats.values():
        s["acc"] = s["correct"] / s["total"] if s["total"] else 0.0
        s["avg_conf"] = s["conf_sum"] / s["correct"] if s["correct"] else 0.0
    return stats


def print_stats(stats: Dict[str, dict]) -> None:
    print("\n=== Per-Class Accuracy & Confidence ===")
    print(f"{'Class':<10} {'Acc':>8} {'AvgConf':>10} {'Samples':>8}")
    print("-" * 42)
    for cls, s in stats.items():
        if s["total"] == 0:
            continue
        print(f"{cls:<10} {s['acc']:>8.3f} {s['avg_conf']:>10.3f} {s['total']:>8}")


def parse_args(argv=None):
    p = argparse.ArgumentParser()
    p.add_argument("--artifacts", type=str, required=True)
    p.add_argument("--model_caslib", type=str, required=True)
    p.add_argument("--test_dir", type=str, required=True, help="服务器端测试集（按类别分文件夹）")
    p.add_argument("--caslib", type=str, default=None)
    add_cas_args(p)
    return p.parse_args(argv)


def main(argv=None):
    args = parse_args(argv)
    meta = load_meta(args.artifacts)
    classes = meta["classes"]
    size = int(meta["img_size"])

    conn = connect(CASConfig.from_args(args))
    try:
        load_actionsets(conn, ("image", "deepLearn"))
        model_tbl, weights = load_tables(conn, meta["model_name"], args.model_caslib)

        print("🔍 Start scoring test dataset...")
        raw = load_images(conn, args.test_dir, "analyze_raw", caslib=args.caslib)
        table = resize_images(conn, raw, "analyze_resized", size, size)
        score(conn, model_tbl, weights, table, "analyze_scored")
        scored = fetch_scored(conn, "analyze_scored", classes)
    finally:
        conn.terminate()

    if scored.empty:
        print("❌ ERROR: No valid test images found. Check test_dir.")
        sys.exit(1)

    stats = class_confidence(scored, classes)
    print_stats(stats)
    print("✅ Done.")
    return stats


if __name__ == "__main__":
    main()
