"""Rules: z-score scaler fitted on training features and reused at inference."""
from __future__ import annotations

import json
import logging
from typing import Any, Mapping, Sequence

import numpy as np
from pydantic import ValidationError

from market_episode_engine.contract.errors import ContractError, DataError, DimensionMismatch
from market_episode_engine.contract.schemas.features import FeatureStatistics, ScalerState

logger = logging.getLogger(__name__)


class StandardScaler:
    """列ごとの平均・標準偏差で (x - mean) / std を行う.

    Notes:
        - std が 0 の列は 1 で割る（変換後その列は定数 0 になる。意図どおり）
        - 推論側では保存済みの値をそのまま使い、新しいデータで fit し直さない
        - statistics（mean/median 補完の学習時統計）も一緒に保存し、推論側で再計算しない
    """

    def __init__(
        self,
        means: Sequence[float] | None = None,
        stds: Sequence[float] | None = None,
        *,
        label_names: Sequence[str] | None = None,
        statistics: FeatureStatistics | None = None,
    ) -> None:
        self.means: np.ndarray | None = None if means is None else np.asarray(means, dtype="float64")
        self.stds: np.ndarray | None = None if stds is None else np.asarray(stds, dtype="float64")
        self.label_names: list[str] | None = None if label_names is None else list(label_names)
        self.statistics = statistics

    @property
    def is_fitted(self) -> bool:
        return self.means is not None and self.stds is not None

    @property
    def n_features(self) -> int:
        return 0 if self.means is None else int(self.means.shape[0])

    def fit(self, batch: Any) -> "StandardScaler":
        """列ごとの平均と母標準偏差を求める.

        Raises:
            DataError: 行が無いバッチ。
            DimensionMismatch: 2次元でないバッチ。
        """
        x = _as_matrix(batch)
        if x.size == 0:
            raise DataError("Cannot fit scaler on an empty batch.")

        self.means = x.mean(axis=0)
        stds = x.std(axis=0)
        self.stds = np.where(stds == 0, 1.0, stds)
        logger.info("Fitted scaler on %d rows x %d features.", x.shape[0], x.shape[1])
        return self

    def transform(self, batch: Any) -> np.ndarray:
        """(x - mean) / std を要素ごとに適用する.

        Raises:
            ContractError: fit 前。
            DimensionMismatch: 列数が fit 時と異なる。
        """
        if self.means is None or self.stds is None:
            raise ContractError("Scaler is not fitted.")

        x = _as_matrix(batch)
        if x.size == 0:
            logger.warning("Empty input batch; skipping transform.")
            return x

        if x.shape[1] != self.means.shape[0]:
            raise DimensionMismatch(
                "Feature count does not match the fitted scaler.",
                context={"expected": int(self.means.shape[0]), "got": int(x.shape[1])},
            )

        return (x - self.means) / self.stds

    def fit_transform(self, batch: Any) -> np.ndarray:
        return self.fit(batch).transform(batch)

    def to_dict(self) -> dict[str, Any]:
        """{means, stds, labelNames?, featureMeans?, featureMedians?} 形式のレコード."""
        if self.means is None or self.stds is None:
            raise ContractError("Scaler is not fitted.")
        state = ScalerState(
            means=[float(v) for v in self.means],
            stds=[float(v) for v in self.stds],
            label_names=self.label_names,
            feature_means=None if self.statistics is None else dict(self.statistics.means),
            feature_medians=None if self.statistics is None else dict(self.statistics.medians),
        )
        return state.model_dump(by_alias=True, exclude_none=True)

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def from_dict(cls, record: Mapping[str, Any]) -> "StandardScaler":
        """to_dict の出力（または同形式の JSON オブジェクト）から復元する.

        Raises:
            ContractError: レコードが不正（長さ不一致、std<=0 など）。
        """
        try:
            state = ScalerState.model_validate(record)
        except ValidationError as err:
            raise ContractError("Invalid scaler record.", context={"errors": err.error_count()}) from err
        statistics = None
        if state.feature_means is not None or state.feature_medians is not None:
            statistics = FeatureStatistics(
                means=state.feature_means or {},
                medians=state.feature_medians or {},
            )
        return cls(state.means, state.stds, label_names=state.label_names, statistics=statistics)

    @classmethod
    def from_json(cls, text: str) -> "StandardScaler":
        try:
            record = json.loads(text)
        except json.JSONDecodeError as err:
            raise ContractError("Invalid scaler JSON.") from err
        if not isinstance(record, dict):
            raise ContractError("Scaler JSON root must be an object.")
        return cls.from_dict(record)


def _as_matrix(batch: Any) -> np.ndarray:
    x = np.asarray(batch, dtype="float64")
    if x.size == 0:
        return x
    if x.ndim != 2:
        raise DimensionMismatch("Feature batch must be 2-dimensional.", context={"ndim": int(x.ndim)})
    return x
