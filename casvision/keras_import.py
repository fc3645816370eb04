from __future__ import annotations

import math
from typing import List, Optional, Sequence, Tuple

import tensorflow as tf

from .models import LayerSpec, input_layer
from .session import call_action

_ACTS = {
    "linear": "IDENTITY",
    "relu": "RELU",
    "sigmoid": "SIGMOID",
    "tanh": "TANH",
    "softmax": "SOFTMAX",
    "elu": "ELU",
    "softplus": "SOFTPLUS",
    "leaky_relu": "LEAKY",
}


def build_vgg_keras(input_shape: Tuple[int, int, int] = (224, 224, 3), num_classes: int = 29,
                    weights_path: Optional[str] = None) -> tf.keras.Model:
    """VGG16 backbone (Keras layer names) + GAP/dropout/softmax head, as one flat model."""
    base = tf.keras.applications.VGG16(
        input_shape=input_shape,
        include_top=False,
        weights=None,  # 避免运行时联网下载
    )
    # 若提供本地权重则加载（ImageNet no_top）
    if weights_path:
        print("Loading weights from:", weights_path)
        base.load_weights(weights_path)

    x = tf.keras.layers.GlobalAveragePooling2D(name="gap")(base.output)
    x = tf.keras.layers.Dropout(0.3, name="head_dropout")(x)
    outputs = tf.keras.layers.Dense(num_classes, activation="softmax", name="predictions")(x)
    return tf.keras.Model(base.input, outputs, name="VGG16_CAS")


def _pair(v) -> Tuple[int, int]:
    if isinstance(v, (list, tuple)):
        return int(v[0]), int(v[1])
    return int(v), int(v)


def _act(cfg: dict) -> str:
    act = cfg.get("activation", "linear")
    if isinstance(act, dict):
        act = act.get("config", {}).get("name") or act.get("class_name", "linear")
    act = str(act).lower()
    if act not in _ACTS:
        raise ValueError(f"Unsupported activation for CAS translation: {act}")
    return _ACTS[act]


def _out_dim(d: int, k: int, s: int, padding: str) -> int:
    if padding == "same":
        return math.ceil(d / s)
    return (d - k) // s + 1


def keras_to_cas_layers(model, offsets: Optional[Sequence[float]] = None) -> List[LayerSpec]:
    """Translate a sequential-style Keras model into CAS layer specs.

    CAS layer names are the Keras layer names, so weights exported from the
    Keras model can be imported by name. Dropout is attached to the layer it
    follows; Flatten is a no-op because fc layers flatten their input.
    """
    _, h, w, c = model.input_shape
    layers = [l for l in model.layers if l.__class__.__name__ != "InputLayer"]
    dense_idx = [i for i, l in enumerate(layers) if l.__class__.__name__ == "Dense"]
    if not layers or not dense_idx or dense_idx[-1] != len(layers) - 1:
        raise ValueError("Model must end with a Dense layer to translate into a CAS output layer")

    specs = [input_layer((h, w, c), offsets=offsets)]

    def add(name, **layer):
        specs.append(LayerSpec(name, layer, [specs[-1].name]))

    for i, layer in enumerate(layers):
        kind = layer.__class__.__name__
        cfg = layer.get_config()
        name = layer.name

        if kind == "Rescaling":
            if len(specs) != 1:
                raise ValueError("Rescaling is only supported directly after the input")
            scale = float(cfg.get("scale", 1.0))
            offset = float(cfg.get("offset", 0.0))
            specs[0].layer["scale"] = scale
            if offset:
                if offsets is not None:
                    raise ValueError(f"{name}: Rescaling offset conflicts with the given channel offsets")
                # x*s + o == (x - (-o/s)) * s
                specs[0].layer["offsets"] = [-offset / scale] * c
        elif kind == "Conv2D":
            kh, kw = _pair(cfg["kernel_size"])
            sh, sw = _pair(cfg.get("strides", 1))
            if sh != sw:
                raise ValueError(f"{name}: CAS convolution needs equal strides, got {(sh, sw)}")
            padding = cfg.get("padding", "valid")
            layer_opts = dict(type="convo", nFilters=int(cfg["filters"]), width=kw, height=kh,
                              stride=sh, act=_act(cfg), includeBias=bool(cfg.get("use_bias", True)))
            if padding == "valid":
                layer_opts["padding"] = 0
            add(name, **layer_opts)
            h, w = _out_dim(h, kh, sh, padding), _out_dim(w, kw, sw, padding)
            c = int(cfg["filters"])
        elif kind in ("MaxPooling2D", "AveragePooling2D"):
            ph, pw = _pair(cfg.get("pool_size", 2))
            sh, sw = _pair(cfg.get("strides") or (ph, pw))
            padding = cfg.get("padding", "valid")
            layer_opts = dict(type="pool", width=pw, height=ph, stride=sh,
                              pool="MAX" if kind == "MaxPooling2D" else "MEAN")
            if padding == "valid":
                layer_opts["padding"] = 0
            add(name, **layer_opts)
            h, w = _out_dim(h, ph, sh, padding), _out_dim(w, pw, sw, padding)
        elif kind in ("GlobalAveragePooling2D", "GlobalMaxPooling2D"):
            add(name, type="pool", width=w, height=h, stride=max(w, h),
                pool="MEAN" if kind == "GlobalAveragePooling2D" else "MAX")
            h = w = 1
        elif kind == "BatchNormalization":
            add(name, type="batchnorm", act="IDENTITY")
        elif kind == "Activation":
            prev = specs[-1].layer
            if prev["type"] == "input":
                raise ValueError(f"{name}: CAS input layers take no activation")
            if prev.get("act", "IDENTITY") != "IDENTITY":
                raise ValueError(f"{name}: previous layer {specs[-1].name} already has an activation")
            prev["act"] = _act(cfg)
        elif kind == "Dropout":
            specs[-1].layer["dropout"] = float(cfg["rate"])
        elif kind == "Flatten":
            continue
        elif kind == "Dense":
            ltype = "output" if i == len(layers) - 1 else "fc"
            add(name, type=ltype, n=int(cfg["units"]), act=_act(cfg),
                includeBias=bool(cfg.get("use_bias", True)))
        else:
            raise ValueError(f"Unsupported Keras layer for CAS translation: {kind} ({name})")

    return specs


def export_keras_weights(model: tf.keras.Model, path: str) -> str:
    # .h5 后缀 -> 旧版 HDF5 格式（CAS 的 KERAS 导入器读取这个格式）
    if not path.endswith(".h5"):
        raise ValueError(f"Keras weight file must end with .h5: {path}")
    model.save(path)
    print("Saved Keras HDF5:", path)
    return path


def import_weights(conn, model_name: str, weights_table: str, weight_file: str) -> str:
    """Load HDF5 weights (a path on the CAS server) into a weights table."""
    call_action(
        conn,
        "deepLearn.dlImportModelWeights",
        modelTable=dict(name=model_name),
        modelWeights=dict(name=weights_table, replace=True),
        formatType="KERAS",
        weightFilePath=weight_file,
    )
    print(f"Imported weights {weight_file} -> {weights_table}")
    return weights_table
