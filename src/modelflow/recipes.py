"""
Preprocessing recipes.

A recipe is a declarative list of preprocessing steps. Every step is fitted
ONLY on training data (``prep``) and then applied to any new data (``bake``).

Available steps:
- step_rm: remove columns
- step_impute_median / step_impute_mode / step_impute_knn: missing values
- step_log: log transform
- step_other: pool infrequent categorical levels
- step_dummy: indicator columns for categorical predictors
- step_zv: drop zero-variance predictors
- step_normalize: center and scale
- step_pca: principal components
- step_smote: SMOTE oversampling (training only)
"""

import copy
import logging
from typing import Any, Dict, List, Optional, Sequence, Union

import numpy as np
import pandas as pd
from imblearn.over_sampling import SMOTE
from sklearn.decomposition import PCA
from sklearn.impute import KNNImputer
from sklearn.preprocessing import StandardScaler

logger = logging.getLogger(__name__)


class Selector:
    """Column selector resolved against the predictors at prep time."""

    def __init__(self, kind: str):
        self.kind = kind

    def resolve(self, df: pd.DataFrame, predictors: List[str]) -> List[str]:
        if self.kind == "predictors":
            return list(predictors)
        if self.kind == "numeric":
            return [
                c for c in predictors
                if pd.api.types.is_numeric_dtype(df[c]) and not pd.api.types.is_bool_dtype(df[c])
            ]
        if self.kind == "nominal":
            return [
                c for c in predictors
                if not pd.api.types.is_numeric_dtype(df[c]) or pd.api.types.is_bool_dtype(df[c])
            ]
        raise ValueError(f"Unknown selector kind: {self.kind}")

    def __repr__(self) -> str:
        return f"all_{self.kind}()"


def all_predictors() -> Selector:
    return Selector("predictors")


def all_numeric() -> Selector:
    return Selector("numeric")


def all_nominal() -> Selector:
    return Selector("nominal")


SELECTOR_NAMES = {
    "all_predictors": all_predictors,
    "all_numeric": all_numeric,
    "all_nominal": all_nominal,
}

ColumnSpec = Union[str, Selector]


class Step:
    """Base class for recipe steps."""

    name = "step"
    skip = False
    default_selector = "predictors"

    def __init__(self, *columns: ColumnSpec):
        self.selectors = list(columns) or [Selector(self.default_selector)]
        self.columns_: Optional[List[str]] = None

    def _resolve(self, df: pd.DataFrame, predictors: List[str]) -> List[str]:
        resolved: List[str] = []
        for sel in self.selectors:
            if isinstance(sel, Selector):
                cols = sel.resolve(df, predictors)
            elif sel in SELECTOR_NAMES:
                cols = SELECTOR_NAMES[sel]().resolve(df, predictors)
            else:
                if sel not in df.columns:
                    raise ValueError(f"{self.name}: column '{sel}' not found in data")
                cols = [sel]
            resolved.extend(c for c in cols if c not in resolved)
        return resolved

    def prep(self, df: pd.DataFrame, predictors: List[str], outcome: str) -> "Step":
        self.columns_ = self._resolve(df, predictors)
        self._fit(df, outcome)
        return self

    def _fit(self, df: pd.DataFrame, outcome: str):
        pass

    def bake(self, df: pd.DataFrame) -> pd.DataFrame:
        raise NotImplementedError

    def __repr__(self) -> str:
        target = self.columns_ if self.columns_ is not None else self.selectors
        return f"{self.name}({', '.join(map(str, target))})"


class StepRm(Step):
    name = "step_rm"

    def __init__(self, *columns: ColumnSpec):
        if not columns:
            raise ValueError("step_rm needs at least one column")
        super().__init__(*columns)

    def bake(self, df):
        return df.drop(columns=[c for c in self.columns_ if c in df.columns])


class StepImputeMedian(Step):
    name = "step_impute_median"
    default_selector = "numeric"

    def _fit(self, df, outcome):
        self.medians_ = {c: df[c].median() for c in self.columns_}

    def bake(self, df):
        df = df.copy()
        for col, value in self.medians_.items():
            df[col] = df[col].fillna(value)
        return df


class StepImputeMode(Step):
    name = "step_impute_mode"
    default_selector = "nominal"

    def _fit(self, df, outcome):
        self.modes_ = {}
        for col in self.columns_:
            counts = df[col].value_counts(dropna=True)
            if counts.empty:
                raise ValueError(f"{self.name}: column '{col}' has no observed values")
            self.modes_[col] = counts.index[0]

    def bake(self, df):
        df = df.copy()
        for col, value in self.modes_.items():
            df[col] = df[col].fillna(value)
        return df


class StepImputeKnn(Step):
    name = "step_impute_knn"
    default_selector = "numeric"

    def __init__(self, *columns: ColumnSpec, neighbors: int = 5):
        super().__init__(*columns)
        self.neighbors = neighbors

    def _fit(self, df, outcome):
        self.imputer_ = KNNImputer(n_neighbors=self.neighbors)
        if self.columns_:
            self.imputer_.fit(df[self.columns_])

    def bake(self, df):
        if not self.columns_:
            return df
        df = df.copy()
        df[self.columns_] = self.imputer_.transform(df[self.columns_])
        return df


class StepLog(Step):
    name = "step_log"
    default_selector = "numeric"

    def __init__(self, *columns: ColumnSpec, base: float = np.e, offset: float = 0.0):
        super().__init__(*columns)
        self.base = base
        self.offset = offset

    def bake(self, df):
        df = df.copy()
        for col in self.columns_:
            shifted = df[col].astype(float) + self.offset
            if (shifted <= 0).any():
                logger.warning(f"{self.name}: non-positive values in '{col}' produce NaN/-inf")
            with np.errstate(divide="ignore", invalid="ignore"):
                df[col] = np.log(shifted) / np.log(self.base)
        return df


class StepOther(Step):
    name = "step_other"
    default_selector = "nominal"

    def __init__(self, *columns: ColumnSpec, threshold: float = 0.05, other: str = "other"):
        super().__init__(*columns)
        self.threshold = threshold
        self.other = other

    def _fit(self, df, outcome):
        self.keep_levels_ = {}
        for col in self.columns_:
            freqs = df[col].value_counts(normalize=True, dropna=True)
            if self.threshold >= 1:
                keep = freqs.index[: int(self.threshold)]
            else:
                keep = freqs.index[freqs >= self.threshold]
            self.keep_levels_[col] = set(keep)

    def bake(self, df):
        df = df.copy()
        for col, keep in self.keep_levels_.items():
            values = df[col].astype("object")
            pooled = values.notna() & ~values.isin(keep)
            df[col] = values.where(~pooled, self.other)
        return df


class StepDummy(Step):
    """
    Indicator columns for categorical predictors.

    Levels are learned at prep time. Unseen levels at bake time get all-zero
    indicators; missing values give missing indicators.
    """

    name = "step_dummy"
    default_selector = "nominal"

    def __init__(self, *columns: ColumnSpec, one_hot: bool = False):
        super().__init__(*columns)
        self.one_hot = one_hot

    def _fit(self, df, outcome):
        self.levels_ = {}
        for col in self.columns_:
            levels = sorted(df[col].dropna().astype(str).unique())
            if not self.one_hot:
                levels = levels[1:]
            self.levels_[col] = levels

    @staticmethod
    def _dummy_name(col: str, level: str) -> str:
        clean = "".join(ch if ch.isalnum() else "_" for ch in level).strip("_")
        return f"{col}_{clean or 'blank'}"

    def bake(self, df):
        pieces = []
        for col, levels in self.levels_.items():
            values = df[col].astype("object")
            missing = values.isna()
            as_str = values.astype(str)
            for level in levels:
                indicator = (as_str == level).astype(float)
                indicator[missing] = np.nan
                pieces.append(indicator.rename(self._dummy_name(col, level)))

        df = df.drop(columns=list(self.levels_))
        if pieces:
            df = pd.concat([df] + pieces, axis=1)
        return df


class StepZv(Step):
    name = "step_zv"

    def _fit(self, df, outcome):
        self.removed_ = [c for c in self.columns_ if df[c].nunique(dropna=True) <= 1]
        if self.removed_:
            logger.debug(f"{self.name}: removing zero-variance columns {self.removed_}")

    def bake(self, df):
        return df.drop(columns=[c for c in self.removed_ if c in df.columns])


class StepNormalize(Step):
    name = "step_normalize"
    default_selector = "numeric"

    def __init__(self, *columns: ColumnSpec):
        super().__init__(*columns)

    def _fit(self, df, outcome):
        self.scaler_ = StandardScaler()
        if self.columns_:
            self.scaler_.fit(df[self.columns_])

    def bake(self, df):
        if not self.columns_:
            return df
        df = df.copy()
        df[self.columns_] = self.scaler_.transform(df[self.columns_])
        return df


class StepPca(Step):
    """
    Principal components of numeric predictors.

    Either ``num_comp`` components are kept, or as many as needed to reach
    ``threshold`` of the explained variance.
    """

    name = "step_pca"
    default_selector = "numeric"

    def __init__(
        self,
        *columns: ColumnSpec,
        num_comp: Optional[int] = None,
        threshold: Optional[float] = None,
        prefix: str = "PC",
    ):
        super().__init__(*columns)
        if num_comp is None and threshold is None:
            num_comp = 5
        self.num_comp = num_comp
        self.threshold = threshold
        self.prefix = prefix

    def _fit(self, df, outcome):
        X = df[self.columns_]
        if X.isna().any().any():
            raise ValueError(f"{self.name}: impute missing values before PCA")
        n_components = self.threshold if self.threshold is not None else min(
            self.num_comp, len(self.columns_), len(X)
        )
        self.pca_ = PCA(n_components=n_components)
        self.pca_.fit(X)
        self.n_components_ = self.pca_.n_components_
        width = len(str(self.n_components_))
        self.names_ = [f"{self.prefix}{str(i + 1).zfill(width)}" for i in range(self.n_components_)]
        logger.debug(
            f"{self.name}: {len(self.columns_)} columns -> {self.n_components_} components "
            f"({np.sum(self.pca_.explained_variance_ratio_):.3f} variance)"
        )

    def bake(self, df):
        scores = pd.DataFrame(
            self.pca_.transform(df[self.columns_]), columns=self.names_, index=df.index
        )
        return pd.concat([df.drop(columns=self.columns_), scores], axis=1)


class StepSmote(Step):
    """
    SMOTE oversampling of the minority class.

    Only applied to the training data when the recipe is prepped, never when
    baking new data. Requires numeric, complete predictors.
    """

    name = "step_smote"
    skip = True

    def __init__(self, *columns: ColumnSpec, neighbors: int = 5, seed: int = 42):
        super().__init__(*columns)
        self.neighbors = neighbors
        self.seed = seed

    def _fit(self, df, outcome):
        self.outcome_ = outcome

    def _make_smote(self, y: pd.Series) -> Optional[SMOTE]:
        classes, counts = np.unique(y, return_counts=True)
        if len(classes) < 2:
            raise ValueError(
                f"Outcome contains only {len(classes)} class ({classes}). "
                "Need at least 2 classes for SMOTE."
            )

        min_class_count = counts.min()
        if min_class_count <= 1:
            logger.warning("Skipping SMOTE: minority class has <=1 sample in training data.")
            return None

        k_neighbors = min(self.neighbors, min_class_count - 1)
        if k_neighbors < self.neighbors:
            logger.debug(
                "Adjusted SMOTE k_neighbors from %s to %s based on minority class size.",
                self.neighbors,
                k_neighbors,
            )
        return SMOTE(random_state=self.seed, k_neighbors=k_neighbors)

    def bake(self, df):
        y = df[self.outcome_]
        smote = self._make_smote(y)
        if smote is None:
            return df

        X = df[self.columns_]
        if X.isna().any().any():
            raise ValueError(f"{self.name}: impute missing values before SMOTE")

        X_res, y_res = smote.fit_resample(X, y)
        n_synthetic = len(X_res) - len(df)
        logger.debug(
            f"{self.name}: class counts {dict(zip(*np.unique(y, return_counts=True)))} -> "
            f"{dict(zip(*np.unique(y_res, return_counts=True)))}"
        )

        out = pd.DataFrame(X_res, columns=self.columns_)
        out[self.outcome_] = np.asarray(y_res)
        # carry through the remaining columns; synthetic rows have no values for them
        others = [c for c in df.columns if c not in out.columns]
        if others:
            carried = pd.concat(
                [
                    df[others].reset_index(drop=True),
                    pd.DataFrame(index=range(n_synthetic), columns=others),
                ],
                ignore_index=True,
            )
            out = pd.concat([out, carried], axis=1)
        return out[[c for c in df.columns]]


STEP_FACTORY = {
    "rm": StepRm,
    "impute_median": StepImputeMedian,
    "impute_mode": StepImputeMode,
    "impute_knn": StepImputeKnn,
    "log": StepLog,
    "other": StepOther,
    "dummy": StepDummy,
    "zv": StepZv,
    "normalize": StepNormalize,
    "pca": StepPca,
    "smote": StepSmote,
}


class Recipe:
    """
    Preprocessing recipe.

    Parameters
    ----------
    outcome : str
        Outcome column; passed through every step untouched
    predictors : list, optional
        Predictor columns. Defaults to every non-outcome column of the data.
    data : pd.DataFrame, optional
        Template data, used by ``summary()`` before the recipe is prepped
    """

    def __init__(
        self,
        outcome: str,
        predictors: Optional[Sequence[str]] = None,
        data: Optional[pd.DataFrame] = None,
    ):
        self.outcome = outcome
        self.predictors = list(predictors) if predictors is not None else None
        self.template = data
        self.roles: Dict[str, str] = {}
        self.steps: List[Step] = []

        self.trained = False
        self.input_predictors_: Optional[List[str]] = None
        self.juiced_: Optional[pd.DataFrame] = None

    def update_role(self, *columns: str, new_role: str = "id") -> "Recipe":
        """Give columns a non-predictor role; they are carried through untouched."""
        for col in columns:
            self.roles[col] = new_role
        return self

    def add_step(self, step: Step) -> "Recipe":
        if self.trained:
            raise ValueError("Cannot add steps to a recipe that has been prepped")
        self.steps.append(step)
        return self

    def step_rm(self, *columns: ColumnSpec) -> "Recipe":
        return self.add_step(StepRm(*columns))

    def step_impute_median(self, *columns: ColumnSpec) -> "Recipe":
        return self.add_step(StepImputeMedian(*columns))

    def step_impute_mode(self, *columns: ColumnSpec) -> "Recipe":
        return self.add_step(StepImputeMode(*columns))

    def step_impute_knn(self, *columns: ColumnSpec, neighbors: int = 5) -> "Recipe":
        return self.add_step(StepImputeKnn(*columns, neighbors=neighbors))

    def step_log(self, *columns: ColumnSpec, base: float = np.e, offset: float = 0.0) -> "Recipe":
        return self.add_step(StepLog(*columns, base=base, offset=offset))

    def step_other(self, *columns: ColumnSpec, threshold: float = 0.05, other: str = "other") -> "Recipe":
        return self.add_step(StepOther(*columns, threshold=threshold, other=other))

    def step_dummy(self, *columns: ColumnSpec, one_hot: bool = False) -> "Recipe":
        return self.add_step(StepDummy(*columns, one_hot=one_hot))

    def step_zv(self, *columns: ColumnSpec) -> "Recipe":
        return self.add_step(StepZv(*columns))

    def step_normalize(self, *columns: ColumnSpec) -> "Recipe":
        return self.add_step(StepNormalize(*columns))

    def step_pca(
        self,
        *columns: ColumnSpec,
        num_comp: Optional[int] = None,
        threshold: Optional[float] = None,
    ) -> "Recipe":
        return self.add_step(StepPca(*columns, num_comp=num_comp, threshold=threshold))

    def step_smote(self, *columns: ColumnSpec, neighbors: int = 5, seed: int = 42) -> "Recipe":
        return self.add_step(StepSmote(*columns, neighbors=neighbors, seed=seed))

    def _predictor_columns(self, df: pd.DataFrame) -> List[str]:
        return [c for c in df.columns if c != self.outcome and c not in self.roles]

    def prep(self, training: pd.DataFrame) -> "Recipe":
        """
        Fit every step on the training data.

        Returns a trained copy; the original recipe is left untouched so it
        can be prepped again on another resample.
        """
        if self.outcome not in training.columns:
            raise ValueError(f"Outcome column '{self.outcome}' not found in training data")

        trained = copy.deepcopy(self)
        trained.template = None

        if trained.predictors is None:
            input_predictors = trained._predictor_columns(training)
        else:
            missing = [c for c in trained.predictors if c not in training.columns]
            if missing:
                raise ValueError(f"Predictor columns not found in training data: {missing}")
            input_predictors = list(trained.predictors)

        keep = [c for c in trained.roles if c in training.columns]
        df = training[keep + input_predictors + [trained.outcome]].copy()

        for step in trained.steps:
            step.prep(df, trained._predictor_columns(df), trained.outcome)
            df = step.bake(df)

        trained.trained = True
        trained.input_predictors_ = input_predictors
        trained.juiced_ = df.reset_index(drop=True)

        logger.debug(
            f"Prepped recipe with {len(trained.steps)} steps: "
            f"{len(input_predictors)} -> {len(trained.output_predictors())} predictors"
        )
        return trained

    def bake(self, new_data: Optional[pd.DataFrame] = None) -> pd.DataFrame:
        """
        Apply the trained steps to new data.

        Steps marked ``skip`` (SMOTE) are not applied. Passing ``None``
        returns the processed training data, as ``juice()`` does.
        """
        if not self.trained:
            raise ValueError("Recipe not prepped yet. Call prep() first.")
        if new_data is None:
            return self.juice()

        missing = [c for c in self.input_predictors_ if c not in new_data.columns]
        if missing:
            raise ValueError(f"New data is missing predictor columns: {missing}")

        keep = [c for c in self.roles if c in new_data.columns]
        keep += self.input_predictors_
        if self.outcome in new_data.columns:
            keep.append(self.outcome)
        df = new_data[keep].copy()

        for step in self.steps:
            if step.skip:
                continue
            df = step.bake(df)

        return df

    def juice(self) -> pd.DataFrame:
        """Processed training data (including skip-only steps such as SMOTE)."""
        if not self.trained:
            raise ValueError("Recipe not prepped yet. Call prep() first.")
        return self.juiced_.copy()

    def output_predictors(self) -> List[str]:
        if not self.trained:
            raise ValueError("Recipe not prepped yet. Call prep() first.")
        return self._predictor_columns(self.juiced_)

    def summary(self) -> pd.DataFrame:
        """Variables with their type and role."""
        if self.trained:
            df = self.juiced_
        elif self.template is not None:
            df = self.template
        else:
            raise ValueError("summary() needs template data or a prepped recipe")

        rows = []
        for col in df.columns:
            if col == self.outcome:
                role = "outcome"
            elif col in self.roles:
                role = self.roles[col]
            elif self.predictors is not None and not self.trained and col not in self.predictors:
                continue
            else:
                role = "predictor"
            numeric = pd.api.types.is_numeric_dtype(df[col]) and not pd.api.types.is_bool_dtype(df[col])
            derived = (
                self.trained
                and role == "predictor"
                and col not in self.input_predictors_
            )
            rows.append(
                {
                    "variable": col,
                    "type": "numeric" if numeric else "nominal",
                    "role": role,
                    "source": "derived" if derived else "original",
                }
            )
        return pd.DataFrame(rows)

    def __repr__(self) -> str:
        status = "trained" if self.trained else "untrained"
        steps = "\n".join(f"  - {s!r}" for s in self.steps) or "  (no steps)"
        return f"<Recipe outcome={self.outcome} [{status}]>\n{steps}"


def recipe_from_config(
    outcome: str,
    steps_config: List[Dict[str, Any]],
    id_columns: Optional[Sequence[str]] = None,
    predictors: Optional[Sequence[str]] = None,
) -> Recipe:
    """
    Build a recipe from a list of step definitions.

    Each entry names a step and its columns, for example::

        - step: dummy
          columns: [all_nominal]
        - step: normalize
    """
    recipe = Recipe(outcome=outcome, predictors=predictors)
    if id_columns:
        recipe.update_role(*id_columns, new_role="id")

    for entry in steps_config or []:
        entry = dict(entry)
        step_name = entry.pop("step", None)
        if step_name not in STEP_FACTORY:
            raise ValueError(
                f"Unknown recipe step: {step_name}. Available: {list(STEP_FACTORY.keys())}"
            )
        columns = entry.pop("columns", None) or []
        step_cls = STEP_FACTORY[step_name]
        recipe.add_step(step_cls(*columns, **entry))

    return recipe
