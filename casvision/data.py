from __future__ import annotations

import io
import os
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

from PIL import Image

from .session import call_action, drop_table

try:
    import matplotlib
    matplotlib.use("Agg")
    import matplotlib.pyplot as plt
except Exception:
    plt = None

IMAGE_COL = "_image_"
LABEL_COL = "_label_"
PATH_COL = "_path_"
PART_COL = "_PartInd_"

MUTATIONS = (
    "horizontalFlip",
    "verticalFlip",
    "sharpen",
    "lighten",
    "darken",
    "colorJittering",
    "colorShifting",
    "rotateLeft",
    "rotateRight",
    "pyramidUp",
    "pyramidDown",
    "invertPixels",
)


@dataclass
class AugmentConfig:
    """Sweep crop: a width x height window moved over the image in step-pixel strides."""
    width: int = 200
    height: int = 200
    step: int = 24
    output_width: int = 224
    output_height: int = 224
    sweep: bool = True


def load_images(conn, path: str, casout: str, caslib: Optional[str] = None, label_level: int = 1) -> dict:
    """把服务器端目录（每类一个子文件夹）读成内存表，类别取自目录名。"""
    params = dict(
        path=path,
        recurse=True,
        labelLevels=label_level,
        decode=False,
        casOut=dict(name=casout, replace=True),
    )
    if caslib:
        params["caslib"] = caslib
    call_action(conn, "image.loadImages", **params)
    print(f"Loaded images from {path!r} -> {casout}")
    return dict(name=casout)


def label_counts(conn, table: dict) -> Dict[str, int]:
    res = call_action(conn, "simple.freq", table=table, inputs=[LABEL_COL])
    freq = res["Frequency"]
    counts = {str(r["FmtVar"]).strip(): int(r["Frequency"]) for _, r in freq.iterrows()}
    return dict(sorted(counts.items()))


def channel_means(conn, table: dict) -> List[float]:
    # 引擎按 BGR 顺序存储通道
    res = call_action(conn, "image.summarizeImages", table=table)
    summary = res["Summary"]
    cols = ["mean1stChannel", "mean2ndChannel", "mean3rdChannel"]
    return [float(summary[c].iloc[0]) for c in cols]


def _decode(value) -> Image.Image:
    if isinstance(value, Image.Image):
        return value.convert("RGB")
    img = Image.open(io.BytesIO(bytes(value)))
    return img.convert("RGB")


def fetch_samples(conn, table: dict, n: int = 8, seed: int = 42) -> List[Tuple[Image.Image, str]]:
    tbl = dict(table)
    tbl["computedVars"] = ["_rand_"]
    tbl["computedVarsProgram"] = f"call streaminit({int(seed)}); _rand_ = rand('uniform');"
    res = call_action(
        conn,
        "table.fetch",
        table=tbl,
        fetchVars=[IMAGE_COL, LABEL_COL, PATH_COL],
        sortBy=[dict(name="_rand_")],
        to=n,
        maxRows=n,
        index=False,
    )
    rows = res["Fetch"]
    return [(_decode(r[IMAGE_COL]), str(r[LABEL_COL]).strip()) for _, r in rows.iterrows()]


def show_samples(samples: Sequence[Tuple[Image.Image, str]], out_path: str, ncols: int = 4) -> None:
    if plt is None or not samples:
        return
    ncols = max(1, min(ncols, len(samples)))
    nrows = (len(samples) + ncols - 1) // ncols
    fig, axes = plt.subplots(nrows, ncols, figsize=(3 * ncols, 3 * nrows), squeeze=False)
    for ax in axes.ravel():
        ax.axis("off")
    for ax, (img, label) in zip(axes.ravel(), samples):
        ax.imshow(img)
        ax.set_title(label)
    fig.tight_layout()
    fig.savefig(out_path, dpi=150)
    plt.close(fig)


def resize_images(conn, table: dict, casout: str, width: int, height: int,
                  copy_vars: Sequence[str] = (LABEL_COL, PATH_COL)) -> dict:
    call_action(
        conn,
        "image.processImages",
        table=table,
        imageFunctions=[dict(options=dict(functionType="RESIZE", width=width, height=height))],
        copyVars=list(copy_vars),
        casOut=dict(name=casout, replace=True),
    )
    return dict(name=casout)


def augment_images(
    conn,
    table: dict,
    casout: str,
    crop: AugmentConfig,
    mutations: Sequence[str] = (),
    copy_vars: Sequence[str] = (LABEL_COL, PATH_COL),
) -> dict:
    unknown = [m for m in mutations if m not in MUTATIONS]
    if unknown:
        raise ValueError(f"Unknown mutation(s): {unknown}. Choose from {list(MUTATIONS)}")

    params = dict(
        table=table,
        cropList=[
            dict(
                sweepImage=crop.sweep,
                x=0,
                y=0,
                width=crop.width,
                height=crop.height,
                stepSize=crop.step,
                outputWidth=crop.output_width,
                outputHeight=crop.output_height,
            )
        ],
        copyVars=list(copy_vars),
        casOut=dict(name=casout, replace=True),
    )
    if mutations:
        params["mutations"] = {m: True for m in mutations}
    call_action(conn, "image.augmentImages", **params)
    return dict(name=casout)


def partition(conn, table: dict, casout: str, train_pct: float = 80, seed: int = 42) -> dict:
    call_action(
        conn,
        "sampling.stratified",
        table=dict(name=table["name"], groupBy=LABEL_COL),
        sampPct=train_pct,
        partInd=True,
        seed=seed,
        output=dict(casOut=dict(name=casout, replace=True), copyVars="ALL"),
    )
    return dict(name=casout)


def add_data_args(p):
    p.add_argument("--train_dir", type=str, required=True, help="服务器端图片目录（每类一个子文件夹）")
    p.add_argument("--caslib", type=str, default=None, help="train_dir 所在的 caslib；省略时为服务器绝对路径")
    p.add_argument("--img_size", type=int, default=224)
    p.add_argument("--train_pct", type=float, default=80)
    p.add_argument("--augment", action="store_true", help="滑窗裁剪 + 随机变换做数据增强")
    p.add_argument("--mutations", type=str, nargs="*", default=["horizontalFlip", "sharpen", "lighten", "darken"])
    p.add_argument("--n_samples", type=int, default=8, help="保存多少张样例图（0 表示不保存）")
    return p


def concat_tables(conn, casout: str, *tables: dict) -> dict:
    """Stack tables (optionally filtered by ``where``) into one with a DATA step."""
    sources = []
    for t in tables:
        where = t.get("where")
        sources.append(f"{t['name']}(where=({where}))" if where else t["name"])
    drop_table(conn, casout)
    call_action(conn, "dataStep.runCode", code=f"data {casout}; set {' '.join(sources)}; run;")
    return dict(name=casout)


def prepare_dataset(conn, args, out_dir: str, prefix: str = "images") -> Tuple[dict, List[str], List[float]]:
    """Load, preview, resize, partition, and optionally augment the image folder.

    The split is made on source images; only training rows are augmented, so
    crops of one image never end up on both sides of the split.

    Returns ``(table, classes, offsets)`` where ``offsets`` are the per-channel
    means of the resized images.
    """
    raw = load_images(conn, args.train_dir, f"{prefix}_raw", caslib=args.caslib)
    counts = label_counts(conn, raw)
    if not counts:
        raise ValueError(f"No labelled images found under {args.train_dir!r}")
    classes = list(counts)
    print("Classes:", classes)
    print("Num classes:", len(classes))
    for cls, n in counts.items():
        print(f"  → {cls}: {n} images")

    if args.n_samples:
        samples = fetch_samples(conn, raw, n=args.n_samples, seed=args.seed)
        sample_path = os.path.join(out_dir, "samples.png")
        show_samples(samples, sample_path)
        if os.path.exists(sample_path):
            print("Saved samples:", sample_path)

    size = args.img_size
    resized = resize_images(conn, raw, f"{prefix}_resized", size, size)
    offsets = channel_means(conn, resized)
    part = partition(conn, resized, f"{prefix}_part", train_pct=args.train_pct, seed=args.seed)
    temp = [raw["name"], resized["name"]]

    if args.augment:
        # 只对训练分区放大再滑窗裁剪回 img_size，验证分区保持原样
        big = int(round(size * 1.15))
        keep = [LABEL_COL, PATH_COL, PART_COL]
        train_big = resize_images(conn, dict(name=part["name"], where=f"{PART_COL}=1"),
                                  f"{prefix}_train_big", big, big, copy_vars=keep)
        crop = AugmentConfig(width=size, height=size, step=max(1, (big - size) // 2),
                             output_width=size, output_height=size)
        train_aug = augment_images(conn, train_big, f"{prefix}_train_aug", crop, args.mutations, copy_vars=keep)
        final = concat_tables(conn, f"{prefix}_final", train_aug,
                              dict(name=part["name"], where=f"{PART_COL}=0"))
        temp += [part["name"], train_big["name"], train_aug["name"]]
    else:
        final = part

    # 最终表已带上所有列，中间表可以释放
    for name in sorted(temp):
        drop_table(conn, name)
    return final, classes, offsets
