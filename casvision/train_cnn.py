from __future__ import annotations

import argparse
import os

from .data import add_data_args, prepare_dataset
from .models import build_model, cnn_layers, model_info
from .session import CASConfig, add_cas_args, connect, load_actionsets
from .train_common import TrainConfig, train_and_evaluate
from .utils import ensure_dir, save_json

ACTIONSETS = ("image", "deepLearn", "sampling", "astore")

def parse_args(argv=None):
    p = argparse.ArgumentParser()
    add_data_args(p)
    p.add_argument("--out_dir", type=str, default="artifacts/cnn")
    p.add_argument("--model_name", type=str, default="cnn_small")
    p.add_argument("--save_caslib", type=str, default=None, help="把模型表保存为 sashdat 的 caslib（可选）")
    p.add_argument("--epochs", type=int, default=15)
    p.add_argument("--batch_size", type=int, default=64)
    p.add_argument("--lr", type=float, default=1e-3)
    p.add_argument("--seed", type=int, default=42)
    add_cas_args(p)
    return p.parse_args(argv)

def main(argv=None):
    args = parse_args(argv)
    ensure_dir(args.out_dir)
    conn = connect(CASConfig.from_args(args))
    try:
        load_actionsets(conn, ACTIONSETS)
        table, classes, offsets = prepare_dataset(conn, args, args.out_dir)

        input_shape = (args.img_size, args.img_size, 3)
        build_model(conn, args.model_name, cnn_layers(input_shape, len(classes), offsets=offsets))
        print(model_info(conn, args.model_name))

        cfg = TrainConfig(
            out_dir=args.out_dir,
            epochs=args.epochs,
            batch_size=args.batch_size,
            lr=args.lr,
            seed=args.seed,
        )
        save_json(
            {"img_size": args.img_size, "classes": classes, "num_classes": len(classes),
             "model": "CNN", "model_name": args.model_name},
            os.path.join(args.out_dir, "meta.json"),
        )
        metrics = train_and_evaluate(conn, args.model_name, table, classes, cfg, caslib=args.save_caslib)
        print(f"[CNN] valid_accuracy={metrics['valid_accuracy']:.4f}  saved={metrics['astore_path']}")
        return metrics
    finally:
        conn.terminate()

if __name__ == "__main__":
    main()
