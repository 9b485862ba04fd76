from __future__ import annotations

import os
import sqlite3
import sys

import matplotlib
matplotlib.use("Agg")
import matplotlib.pyplot as plt
import pandas as pd


AUDIT_DB = "logs/audit_scenario.sqlite"

OUT_TABLE_DIR = "results/tables"
OUT_GRAPH_DIR = "results/graphs"


def read_decisions_sqlite(db_path: str) -> pd.DataFrame:
    con = sqlite3.connect(db_path)
    df = pd.read_sql_query("SELECT * FROM decisions", con)
    con.close()
    return df


def summarize(df: pd.DataFrame) -> pd.DataFrame:
    """Per-event accept/reject counts and acceptance rate."""
    counts = df.groupby(["event", "decision"]).size().unstack(fill_value=0)
    for col in ("ACCEPT", "REJECT"):
        if col not in counts.columns:
            counts[col] = 0
    counts = counts[["ACCEPT", "REJECT"]].reset_index()
    counts["total"] = counts["ACCEPT"] + counts["REJECT"]
    counts["accept_rate"] = (counts["ACCEPT"] / counts["total"]) * 100.0
    return counts


def reason_distribution(df: pd.DataFrame) -> pd.DataFrame:
    return df.groupby(["event", "decision", "reason"]).size().reset_index(name="count")


def main(db_path: str = AUDIT_DB) -> None:
    os.makedirs(OUT_TABLE_DIR, exist_ok=True)
    os.makedirs(OUT_GRAPH_DIR, exist_ok=True)

    df = read_decisions_sqlite(db_path)
    if df.empty:
        print("No decisions logged in", db_path)
        return

    agg = summarize(df)
    out_csv = os.path.join(OUT_TABLE_DIR, "workflow_decisions.csv")
    agg.to_csv(out_csv, index=False)

    reasons = reason_distribution(df)
    out_reason_csv = os.path.join(OUT_TABLE_DIR, "reason_distribution.csv")
    reasons.to_csv(out_reason_csv, index=False)

    events = agg["event"].tolist()
    x = range(len(events))

    plt.figure()
    plt.bar([i - 0.2 for i in x], agg["ACCEPT"], width=0.4, label="Accepted")
    plt.bar([i + 0.2 for i in x], agg["REJECT"], width=0.4, label="Rejected")

    plt.xticks(list(x), events, rotation=30, ha="right")
    plt.ylabel("Operations")
    plt.title("Positioner workflow decisions by event")
    plt.legend()
    plt.tight_layout()

    out_png = os.path.join(OUT_GRAPH_DIR, "workflow_decisions.png")
    plt.savefig(out_png, dpi=300)
    plt.close()

    print("RESULTS GENERATED:")
    print(" -", out_csv)
    print(" -", out_reason_csv)
    print(" -", out_png)


if __name__ == "__main__":
    main(sys.argv[1] if len(sys.argv) > 1 else AUDIT_DB)
