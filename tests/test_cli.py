import json
from unittest.mock import patch

import pytest

from casvision import analyze_class_confidence, predict_images, train_cnn
from conftest import CLASSES, FakeCAS, workflow_responses


def test_train_cnn_end_to_end(tmp_path):
    conn = FakeCAS(workflow_responses())
    out_dir = tmp_path / "cnn"
    with patch("casvision.train_cnn.connect", return_value=conn):
        metrics = train_cnn.main([
            "--train_dir", "/data/train", "--img_size", "32", "--epochs", "2",
            "--out_dir", str(out_dir), "--n_samples", "0",
        ])

    assert conn.terminated
    assert metrics["valid_accuracy"] == pytest.approx(0.75)
    assert (out_dir / "cnn_small.astore").read_bytes() == b"ASTORE-BYTES"
    meta = json.loads((out_dir / "meta.json").read_text(encoding="utf-8"))
    assert meta == {"img_size": 32, "classes": CLASSES, "num_classes": 2, "model": "CNN", "model_name": "cnn_small"}

    actions = conn.actions()
    assert actions[:4] == ["builtins.loadActionSet"] * 4
    assert actions.index("deepLearn.buildModel") < actions.index("deepLearn.dlTrain") < actions.index("deepLearn.dlScore")
    assert actions[-2:] == ["deepLearn.dlExportModel", "astore.download"]

    output = [p for p in conn.params("deepLearn.addLayer") if p["layer"]["type"] == "output"]
    assert output[0]["layer"]["n"] == 2
    inp = conn.params("deepLearn.addLayer")[0]["layer"]
    assert inp["offsets"] == [101.5, 110.0, 120.25]


def test_train_cnn_terminates_on_failure(tmp_path):
    from conftest import FakeResults
    from casvision.session import CASActionError

    responses = workflow_responses()
    responses["image.loadImages"] = FakeResults(severity=2, messages=["ERROR: path not found"])
    conn = FakeCAS(responses)
    with patch("casvision.train_cnn.connect", return_value=conn):
        with pytest.raises(CASActionError):
            train_cnn.main(["--train_dir", "/missing", "--out_dir", str(tmp_path)])
    assert conn.terminated


def _write_meta(path):
    path.mkdir()
    (path / "meta.json").write_text(json.dumps({
        "img_size": 32, "classes": CLASSES, "num_classes": 2, "model_name": "cnn_small",
    }), encoding="utf-8")


def test_predict_images(tmp_path, capsys):
    _write_meta(tmp_path / "run")
    conn = FakeCAS(workflow_responses())
    with patch("casvision.predict_images.connect", return_value=conn):
        scored = predict_images.main([
            "--artifacts", str(tmp_path / "run"), "--model_caslib", "models",
            "--image_dir", "/new", "--topk", "2",
        ])

    assert len(scored) == 4
    assert conn.actions()[2:5] == ["table.loadTable"] * 3
    out = capsys.readouterr().out
    assert "c2.jpg         -> dog" in out


def test_topk_orders_by_probability():
    import pandas as pd

    row = pd.Series({"P__label_cat": 0.2, "P__label_dog": 0.7, "P__label_fox": 0.1})
    assert predict_images.topk(row, ["cat", "dog", "fox"], k=2) == [("dog", 0.7), ("cat", 0.2)]


def test_class_confidence():
    import pandas as pd

    scored = pd.DataFrame({
        "_label_": ["cat", "cat", "dog", "emu"],
        "I__label_": ["cat", "dog", "dog", "dog"],
        "P__label_cat": [0.9, 0.4, 0.2, 0.3],
        "P__label_dog": [0.1, 0.6, 0.8, 0.7],
    })
    stats = analyze_class_confidence.class_confidence(scored, CLASSES)
    assert stats["cat"]["total"] == 2
    assert stats["cat"]["acc"] == pytest.approx(0.5)
    assert stats["cat"]["avg_conf"] == pytest.approx(0.9)
    assert stats["dog"]["avg_conf"] == pytest.approx(0.8)


def test_analyze_main(tmp_path, capsys):
    _write_meta(tmp_path / "run")
    conn = FakeCAS(workflow_responses())
    with patch("casvision.analyze_class_confidence.connect", return_value=conn):
        stats = analyze_class_confidence.main([
            "--artifacts", str(tmp_path / "run"), "--model_caslib", "models", "--test_dir", "/test",
        ])
    assert stats["dog"]["acc"] == pytest.approx(1.0)
    assert conn.terminated
    assert "Per-Class Accuracy" in capsys.readouterr().out


def test_predict_images_rejects_zero_topk(tmp_path):
    with pytest.raises(SystemExit):
        predict_images.parse_args([
            "--artifacts", str(tmp_path), "--model_caslib", "models", "--image_dir", "/new", "--topk", "0",
        ])


def test_class_confidence_warns_once_per_unknown_label(capsys):
    import pandas as pd

    scored = pd.DataFrame({
        "_label_": ["emu", "emu", "emu", "cat"],
        "I__label_": ["dog", "cat", "dog", "cat"],
        "P__label_cat": [0.3, 0.6, 0.2, 0.9],
        "P__label_dog": [0.7, 0.4, 0.8, 0.1],
    })
    stats = analyze_class_confidence.class_confidence(scored, CLASSES)
    assert capsys.readouterr().out.count("Skip unknown class: emu") == 1
    assert stats["cat"]["total"] == 1
