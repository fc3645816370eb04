from __future__ import annotations

import argparse
import os
from typing import List, Tuple

import numpy as np
import pandas as pd

from .data import PATH_COL, load_images, resize_images
from .session import CASConfig, add_cas_args, connect, load_actionsets
from .train_common import PROB_PREFIX, fetch_scored, load_tables, score
from .utils import load_meta


def topk(row: pd.Series, classes: List[str], k: int = 5) -> List[Tuple[str, float]]:
    prob = np.array([float(row.get(PROB_PREFIX + c, 0.0)) for c in classes])
    idx = np.argsort(prob)[::-1][:k]
    return [(classes[int(i)], float(prob[int(i)])) for i in idx]


def parse_args(argv=None):
    p = argparse.ArgumentParser()
    p.add_argument("--artifacts", type=str, required=True, help="训练输出目录（含 meta.json）")
    p.add_argument("--model_caslib", type=str, required=True, help="保存 sashdat 模型表的 caslib")
    p.add_argument("--image_dir", type=str, required=True, help="服务器端待预测图片目录")
    p.add_argument("--caslib", type=str, default=None)
    p.add_argument("--topk", type=int, default=5)
    add_cas_args(p)
    args = p.parse_args(argv)
    if args.topk < 1:
        p.error("--topk must be >= 1")
    return args


def main(argv=None):
    args = parse_args(argv)
    meta = load_meta(args.artifacts)
    classes = meta["classes"]
    model_name = meta["model_name"]
    size = int(meta["img_size"])

    conn = connect(CASConfig.from_args(args))
    try:
        load_actionsets(conn, ("image", "deepLearn"))
        model_tbl, weights = load_tables(conn, model_name, args.model_caslib)

        raw = load_images(conn, args.image_dir, "predict_raw", caslib=args.caslib)
        table = resize_images(conn, raw, "predict_resized", size, size)
        score(conn, model_tbl, weights, table, "predict_scored")
        scored = fetch_scored(conn, "predict_scored", classes)

        for _, row in scored.sort_values(PATH_COL).iterrows():
            ranked = topk(row, classes, args.topk)
            print(f"{os.path.basename(row[PATH_COL]):<14s} -> {ranked[0][0]}")
            for c, p in ranked:
                print(f"  {c:<8s} {p:.4f}")
        return scored
    finally:
        conn.terminate()


if __name__ == "__main__":
    main()
