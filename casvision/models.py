from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

from .session import call_action


@dataclass
class LayerSpec:
    name: str
    layer: dict
    src: List[str] = field(default_factory=list)


def input_layer(input_shape: Tuple[int, int, int], offsets: Optional[Sequence[float]] = None,
                scale: float = 1.0, name: str = "data") -> LayerSpec:
    h, w, c = input_shape
    layer = dict(type="input", nChannels=c, width=w, height=h, scale=scale)
    if offsets is not None:
        layer["offsets"] = [float(o) for o in offsets]
    return LayerSpec(name, layer)


def cnn_layers(input_shape: Tuple[int, int, int] = (64, 64, 3), num_classes: int = 29,
               offsets: Optional[Sequence[float]] = None) -> List[LayerSpec]:
    """Small from-scratch CNN: two conv blocks, one fc layer, softmax output."""
    specs = [input_layer(input_shape, offsets=offsets, scale=1.0 / 255)]

    def add(name, **layer):
        specs.append(LayerSpec(name, layer, [specs[-1].name]))

    add("conv1a", type="convo", nFilters=32, width=3, height=3, stride=1, act="RELU")
    add("conv1b", type="convo", nFilters=32, width=3, height=3, stride=1, act="RELU")
    add("pool1", type="pool", width=2, height=2, stride=2, pool="MAX", dropout=0.25)

    add("conv2a", type="convo", nFilters=64, width=3, height=3, stride=1, act="RELU")
    add("conv2b", type="convo", nFilters=64, width=3, height=3, stride=1, act="RELU")
    add("pool2", type="pool", width=2, height=2, stride=2, pool="MAX", dropout=0.25)

    add("fc1", type="fc", n=256, act="RELU", dropout=0.4)
    add("output", type="output", n=num_classes, act="SOFTMAX")
    return specs


def build_model(conn, name: str, layers: Sequence[LayerSpec]) -> str:
    call_action(conn, "deepLearn.buildModel", model=dict(name=name, replace=True), type="CNN")
    for spec in layers:
        params = dict(model=name, name=spec.name, layer=spec.layer)
        if spec.src:
            params["srcLayers"] = list(spec.src)
        call_action(conn, "deepLearn.addLayer", **params)
    print(f"Built model {name} ({len(layers)} layers)")
    return name


def model_info(conn, name: str):
    res = call_action(conn, "deepLearn.modelInfo", modelTable=dict(name=name))
    return res["ModelInfo"]
