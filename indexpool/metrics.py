from __future__ import annotations
from dataclasses import dataclass, field
from typing import Dict, Any, List
import pandas as pd

@dataclass
class MetricsStore:
    pool_rows: List[Dict[str, Any]] = field(default_factory=list)
    token_rows: List[Dict[str, Any]] = field(default_factory=list)

    def add_pool(self, row: Dict[str, Any]) -> None:
        self.pool_rows.append(row)

    def add_token_rows(self, rows: List[Dict[str, Any]]) -> None:
        self.token_rows.extend(rows)

    def pool_df(self) -> pd.DataFrame:
        return pd.DataFrame(self.pool_rows)

    def token_df(self) -> pd.DataFrame:
        return pd.DataFrame(self.token_rows)

    def weights_wide(self, column: str = "denorm") -> pd.DataFrame:
        """One column per token symbol, one row per tick."""
        df = self.token_df()
        if df.empty or column not in df.columns:
            return pd.DataFrame()
        return df.pivot_table(index="tick", columns="symbol", values=column, aggfunc="last").sort_index()
