import io

import numpy as np
import pandas as pd
import pytest
from PIL import Image


class FakeResults(dict):
    """Stand-in for swat's CASResults: a dict of result tables plus status fields."""

    def __init__(self, data=None, severity=0, status=None, messages=None):
        super().__init__(data or {})
        self.severity = severity
        self.status = status
        self.messages = messages or []


class FakeCAS:
    """Records every action call; responses map action name -> dict, FakeResults or callable."""

    def __init__(self, responses=None):
        self.responses = dict(responses or {})
        self.calls = []
        self.terminated = False

    def retrieve(self, action, /, **params):
        params.pop("_messagelevel", None)
        self.calls.append((action, params))
        resp = self.responses.get(action)
        if callable(resp):
            resp = resp(**params)
        if isinstance(resp, FakeResults):
            return resp
        return FakeResults(resp)

    def terminate(self):
        self.terminated = True

    def actions(self):
        return [name for name, _ in self.calls]

    def params(self, name):
        return [p for n, p in self.calls if n == name]


def png_bytes(color=(255, 0, 0), size=(16, 16)):
    buf = io.BytesIO()
    Image.fromarray(np.full(size + (3,), color, dtype=np.uint8)).save(buf, format="PNG")
    return buf.getvalue()


CLASSES = ["cat", "dog"]


def workflow_responses(classes=CLASSES):
    """Canned results for a full load -> train -> score -> export run."""

    def fetch(**params):
        if "_image_" in params["fetchVars"]:
            return {"Fetch": pd.DataFrame({
                "_image_": [png_bytes((255, 0, 0)), png_bytes((0, 0, 255))],
                "_label_": ["cat ", "dog "],
                "_path_": ["/data/cat/1.jpg", "/data/dog/1.jpg"],
            })}
        return {"Fetch": pd.DataFrame({
            "_label_": ["cat  ", "cat", "dog", "dog"],
            "_path_": ["/v/c1.jpg", "/v/c2.jpg", "/v/d1.jpg", "/v/d2.jpg"],
            "I__label_": ["cat", "dog", "dog", "dog"],
            "P__label_cat": [0.9, 0.4, 0.2, 0.1],
            "P__label_dog": [0.1, 0.6, 0.8, 0.9],
        })}

    return {
        "simple.freq": {"Frequency": pd.DataFrame({
            "Column": ["_label_", "_label_"],
            "FmtVar": ["dog  ", "cat  "],
            "Level": [2, 1],
            "Frequency": [40.0, 60.0],
        })},
        "image.summarizeImages": {"Summary": pd.DataFrame({
            "mean1stChannel": [101.5],
            "mean2ndChannel": [110.0],
            "mean3rdChannel": [120.25],
        })},
        "table.fetch": fetch,
        "deepLearn.modelInfo": {"ModelInfo": pd.DataFrame({"Descr": ["Number of Layers"], "Value": ["9"]})},
        "deepLearn.dlTrain": {"OptIterHistory": pd.DataFrame({
            "Epoch": [1, 2],
            "LearningRate": [0.001, 0.001],
            "Loss": [1.2, 0.8],
            "FitError": [0.5, 0.3],
            "ValidLoss": [1.3, 0.9],
            "ValidError": [0.55, 0.25],
        })},
        "deepLearn.dlScore": {"ScoreInfo": pd.DataFrame({
            "Descr": ["Number of Observations Read", "Misclassification Error (%)", "Loss Error"],
            "Value": ["4", "25", "0.41"],
        })},
        "astore.download": {"blob": b"ASTORE-BYTES"},
        "simple.numRows": {"numrows": 4},
    }


@pytest.fixture
def fake_cas():
    return FakeCAS()


@pytest.fixture
def workflow_cas():
    return FakeCAS(workflow_responses())
