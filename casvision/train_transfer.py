# casvision/train_transfer.py
from __future__ import annotations
import os
import argparse
from dataclasses import replace

from .data import add_data_args, prepare_dataset
from .keras_import import build_vgg_keras, export_keras_weights, import_weights, keras_to_cas_layers
from .models import build_model, model_info
from .session import CASConfig, add_cas_args, connect, load_actionsets
from .train_common import TrainConfig, finish_run, train
from .utils import ensure_dir, history_to_dict, save_history_plot, save_json


def parse_args(argv=None):
    p = argparse.ArgumentParser()
    add_data_args(p)
    p.add_argument("--out_dir", type=str, default="artifacts/transfer")
    p.add_argument("--model_name", type=str, default="vgg16_transfer")
    p.add_argument("--save_caslib", type=str, default=None)
    p.add_argument("--batch_size", type=int, default=32)
    p.add_argument("--epochs", type=int, default=10)
    p.add_argument("--lr", type=float, default=1e-3)
    p.add_argument("--seed", type=int, default=42)
    p.add_argument("--fine_tune", action="store_true", help="二阶段微调（解冻 backbone）")
    p.add_argument("--weights_path", type=str, default=None, help="本地 ImageNet 权重 .h5（no_top，可选）")
    p.add_argument("--server_weights_path", type=str, default=None,
                   help="CAS 服务器能读到的 .h5 路径；与 --weights_path 一起用时导出到这里再导入")
    add_cas_args(p)
    return p.parse_args(argv)


def main(argv=None):
    args = parse_args(argv)
    ensure_dir(args.out_dir)
    conn = connect(CASConfig.from_args(args))
    try:
        return run(conn, args)
    finally:
        conn.terminate()


def run(conn, args):
    load_actionsets(conn, ("image", "deepLearn", "sampling", "astore"))
    table, classes, offsets = prepare_dataset(conn, args, args.out_dir)
    num_classes = len(classes)

    img_shape = (args.img_size, args.img_size, 3)
    keras_model = build_vgg_keras(img_shape, num_classes, weights_path=args.weights_path)
    build_model(conn, args.model_name, keras_to_cas_layers(keras_model, offsets=offsets))
    print(model_info(conn, args.model_name))

    init_weights = None
    if args.server_weights_path:
        if args.weights_path:
            export_keras_weights(keras_model, args.server_weights_path)
        init_weights = import_weights(conn, args.model_name, f"{args.model_name}_init", args.server_weights_path)
    else:
        print("WARNING: server_weights_path not provided. Training from scratch (slower, worse).")

    cfg = TrainConfig(
        out_dir=args.out_dir,
        epochs=args.epochs,
        batch_size=args.batch_size,
        lr=args.lr,
        seed=args.seed,
        # 只有导入了预训练权重时才冻结 backbone
        freeze_layers_to="block5_pool" if init_weights else None,
    )

    print("\n[Stage-1] Train head only ..." if init_weights else "\n[Stage-1] Train all layers ...")
    history, weights = train(conn, args.model_name, table, cfg, init_weights=init_weights)

    hist_path = os.path.join(args.out_dir, "history.json")
    save_json(history_to_dict(history), hist_path)
    save_history_plot(history, os.path.join(args.out_dir, "training"))
    print("Saved history:", hist_path)

    if args.fine_tune:
        print("\n[Stage-2] Fine-tune all layers ...")
        ft_cfg = replace(cfg, lr=args.lr * 0.1, epochs=max(5, args.epochs // 2), freeze_layers_to=None)
        ft_history, weights = train(conn, args.model_name, table, ft_cfg, init_weights=weights)
        save_json(history_to_dict(ft_history), os.path.join(args.out_dir, "history_finetune.json"))
        save_history_plot(ft_history, os.path.join(args.out_dir, "finetune"))

    # 保存类别映射（推理必须用）
    meta = {
        "img_size": args.img_size,
        "classes": classes,
        "num_classes": num_classes,
        "model": "VGG16",
        "model_name": args.model_name,
    }
    save_json(meta, os.path.join(args.out_dir, "meta.json"))

    metrics = finish_run(conn, args.model_name, weights, table, classes, args.out_dir, caslib=args.save_caslib)
    print(f"[Transfer] valid_accuracy={metrics['valid_accuracy']:.4f}")
    print("Exported:", metrics["astore_path"])
    return metrics


if __name__ == "__main__":
    main()
