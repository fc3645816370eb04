from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from sklearn.metrics import classification_report, confusion_matrix

from .data import IMAGE_COL, LABEL_COL, PART_COL, PATH_COL
from .session import call_action
from .utils import ensure_dir, history_to_dict, save_history_plot, save_json

PRED_COL = "I__label_"
PROB_PREFIX = "P__label_"

@dataclass
class TrainConfig:
    out_dir: str
    epochs: int = 15
    batch_size: int = 64
    lr: float = 1e-3
    seed: int = 42
    optimizer: str = "ADAM"
    log_level: int = 2
    freeze_layers_to: Optional[str] = None
    n_threads: Optional[int] = None

def _part(table: dict, ind: int) -> dict:
    return dict(name=table["name"], where=f"{PART_COL}={ind}")

def train(conn, model_name: str, table: dict, cfg: TrainConfig,
          init_weights: Optional[str] = None) -> Tuple[pd.DataFrame, str]:
    weights = f"{model_name}_weights"
    params = dict(
        table=_part(table, 1),
        validTable=_part(table, 0),
        model=model_name,
        modelWeights=dict(name=weights, replace=True),
        inputs=[IMAGE_COL],
        target=LABEL_COL,
        nominals=[LABEL_COL],
        optimizer=dict(
            miniBatchSize=cfg.batch_size,
            maxEpochs=cfg.epochs,
            logLevel=cfg.log_level,
            algorithm=dict(method=cfg.optimizer, learningRate=cfg.lr),
        ),
        seed=cfg.seed,
    )
    if init_weights:
        params["initWeights"] = dict(name=init_weights)
    if cfg.freeze_layers_to:
        params["freezeLayersTo"] = cfg.freeze_layers_to
    if cfg.n_threads:
        params["nThreads"] = cfg.n_threads

    res = call_action(conn, "deepLearn.dlTrain", **params)
    history = res["OptIterHistory"]
    return history, weights

def score(conn, model_name: str, weights: str, table: dict, casout: str) -> Dict[str, object]:
    res = call_action(
        conn,
        "deepLearn.dlScore",
        table=table,
        model=model_name,
        initWeights=dict(name=weights),
        copyVars=[LABEL_COL, PATH_COL],
        casOut=dict(name=casout, replace=True),
    )
    info = {}
    for _, row in res["ScoreInfo"].iterrows():
        value = row["Value"]
        try:
            value = float(value)
        except (TypeError, ValueError):
            value = str(value).strip()
        info[str(row["Descr"]).strip()] = value
    return info

def fetch_scored(conn, casout: str, classes: Sequence[str], page_size: int = 100000) -> pd.DataFrame:
    """Fetch every scored row, page by page up to the table's row count."""
    prob_cols = [PROB_PREFIX + c for c in classes]
    fetch_vars = [LABEL_COL, PATH_COL, PRED_COL] + prob_cols
    n_rows = int(call_action(conn, "simple.numRows", table=dict(name=casout))["numrows"])

    pages = []
    for start in range(1, n_rows + 1, page_size):
        stop = min(start + page_size - 1, n_rows)
        res = call_action(
            conn,
            "table.fetch",
            table=dict(name=casout),
            fetchVars=fetch_vars,
            sortBy=[dict(name=PATH_COL)],
            maxRows=stop - start + 1,
            index=False,
            to=stop,
            **{"from": start},
        )
        pages.append(pd.DataFrame(res["Fetch"]))

    df = pd.concat(pages, ignore_index=True) if pages else pd.DataFrame(columns=fetch_vars)
    if len(df) != n_rows:
        print(f"WARNING: fetched {len(df)} of {n_rows} scored rows from {casout}")
    for col in (LABEL_COL, PATH_COL, PRED_COL):
        if col in df.columns:
            df[col] = df[col].astype(str).str.strip()
    return df

def evaluate(scored: pd.DataFrame, classes: List[str]) -> dict:
    known = scored[scored[LABEL_COL].isin(classes)]
    y_true = known[LABEL_COL].to_numpy()
    y_pred = known[PRED_COL].to_numpy()
    report = classification_report(y_true, y_pred, labels=classes, output_dict=True, zero_division=0)
    cm = confusion_matrix(y_true, y_pred, labels=classes)
    acc = float(np.mean(y_true == y_pred)) if len(y_true) else 0.0
    return {"accuracy": acc, "n": int(len(y_true)), "classification_report": report, "confusion_matrix": cm.tolist()}

def export_astore(conn, model_name: str, weights: str, out_dir: str) -> str:
    astore_table = f"{model_name}_astore"
    call_action(
        conn,
        "deepLearn.dlExportModel",
        modelTable=dict(name=model_name),
        initWeights=dict(name=weights),
        casOut=dict(name=astore_table, replace=True),
    )
    res = call_action(conn, "astore.download", rstore=dict(name=astore_table))

    ensure_dir(out_dir)
    path = os.path.join(out_dir, f"{model_name}.astore")
    with open(path, "wb") as f:
        f.write(res["blob"])
    return path

def _model_tables(model_name: str) -> Tuple[str, str, str]:
    weights = f"{model_name}_weights"
    return model_name, weights, f"{weights}_attr"

def save_tables(conn, model_name: str, caslib: str) -> List[str]:
    model_tbl, weights, attr = _model_tables(model_name)
    # 权重表的属性（类别映射等）要单独转成表才能落盘
    call_action(conn, "table.attribute", task="CONVERT", name=weights, attrTable=attr)
    saved = []
    for name in (model_tbl, weights, attr):
        call_action(conn, "table.save", table=dict(name=name), name=f"{name}.sashdat",
                    caslib=caslib, replace=True)
        saved.append(f"{name}.sashdat")
    return saved

def load_tables(conn, model_name: str, caslib: str) -> Tuple[str, str]:
    model_tbl, weights, attr = _model_tables(model_name)
    for name in (model_tbl, weights, attr):
        call_action(conn, "table.loadTable", caslib=caslib, path=f"{name}.sashdat",
                    casOut=dict(name=name, replace=True))
    call_action(conn, "table.attribute", task="ADD", name=weights, attrTable=attr)
    return model_tbl, weights

def train_and_evaluate(conn, model_name: str, table: dict, classes: List[str], cfg: TrainConfig,
                       init_weights: Optional[str] = None, caslib: Optional[str] = None) -> dict:
    ensure_dir(cfg.out_dir)

    history, weights = train(conn, model_name, table, cfg, init_weights=init_weights)
    save_json(history_to_dict(history), os.path.join(cfg.out_dir, "history.json"))
    save_history_plot(history, os.path.join(cfg.out_dir, "training"))

    return finish_run(conn, model_name, weights, table, classes, cfg.out_dir, caslib=caslib)

def finish_run(conn, model_name: str, weights: str, table: dict, classes: List[str],
               out_dir: str, caslib: Optional[str] = None) -> dict:
    """Score the validation partition, write report.json, export the astore."""
    scored_name = f"{model_name}_scored"
    info = score(conn, model_name, weights, _part(table, 0), scored_name)
    scored = fetch_scored(conn, scored_name, classes)
    ev = evaluate(scored, classes)
    n_read = info.get("Number of Observations Read")
    if isinstance(n_read, float) and int(n_read) != len(scored):
        print(f"WARNING: dlScore read {int(n_read)} rows but {len(scored)} were fetched for metrics")

    save_json(
        {
            "valid_accuracy": ev["accuracy"],
            "valid_n": ev["n"],
            "score_info": info,
            "labels": classes,
            "classification_report": ev["classification_report"],
            "confusion_matrix": ev["confusion_matrix"],
        },
        os.path.join(out_dir, "report.json"),
    )

    astore_path = export_astore(conn, model_name, weights, out_dir)
    saved = save_tables(conn, model_name, caslib) if caslib else []
    return {
        "valid_accuracy": ev["accuracy"],
        "misclassification": info.get("Misclassification Error (%)"),
        "weights": weights,
        "astore_path": astore_path,
        "saved_tables": saved,
    }
