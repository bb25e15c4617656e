"""Tests for GC/length-aware normalization factors."""

import numpy as np
import pandas as pd
import pytest

from cqn_normalization import quantile_normalize, run_cqn, summarize_fits
from gene_annotation import align_annotation
from pipeline_errors import GeneOrderMismatchError


@pytest.fixture
def cqn_input(synthetic_study):
    counts = pd.concat([synthetic_study.counts, synthetic_study.pseudobulk], axis=1)
    counts = counts[counts.sum(axis=1) >= 20]
    return align_annotation(counts, synthetic_study.annotation)


def test_quantile_normalize_equalizes_distributions():
    rng = np.random.default_rng(1)
    values = np.column_stack([rng.normal(0, 1, 50), rng.normal(3, 2, 50), rng.exponential(1, 50)])
    out = quantile_normalize(values)

    sorted_cols = np.sort(out, axis=0)
    assert np.allclose(sorted_cols[:, 0], sorted_cols[:, 1])
    assert np.allclose(sorted_cols[:, 1], sorted_cols[:, 2])
    # ranks within each column are preserved
    assert (np.argsort(out[:, 1]) == np.argsort(values[:, 1])).all()


class TestRunCqn:
    def test_geometric_mean_one_per_gene(self, cqn_input):
        counts, annotation = cqn_input
        result = run_cqn(counts, annotation)

        nf = result.normalization_factors
        assert nf.shape == counts.shape
        assert (nf > 0).all(axis=None)
        assert np.allclose(np.log(nf).mean(axis=1), 0.0, atol=1e-10)

    def test_outputs_aligned_to_counts(self, cqn_input):
        counts, annotation = cqn_input
        result = run_cqn(counts, annotation)

        for frame in (result.y, result.offset, result.glm_offset, result.fitted):
            assert frame.index.equals(counts.index)
            assert list(frame.columns) == list(counts.columns)
        assert np.allclose(result.normalized, result.y + result.offset)
        assert result.library_size.tolist() == counts.sum(axis=0).tolist()

    def test_does_not_depend_on_condition_labels(self, cqn_input):
        counts, annotation = cqn_input
        a = run_cqn(counts, annotation).normalization_factors
        b = run_cqn(counts[counts.columns[::-1]], annotation).normalization_factors
        pd.testing.assert_frame_equal(a, b[a.columns], check_exact=False, atol=1e-6)

    def test_gene_order_mismatch(self, cqn_input):
        counts, annotation = cqn_input
        with pytest.raises(GeneOrderMismatchError):
            run_cqn(counts, annotation.iloc[::-1])

    def test_too_few_genes(self, cqn_input):
        counts, annotation = cqn_input
        with pytest.raises(ValueError, match="at least"):
            run_cqn(counts.iloc[:5], annotation.iloc[:5])

    def test_percentage_gc_converted(self, cqn_input):
        counts, annotation = cqn_input
        as_percent = annotation.assign(gc_content=annotation["gc_content"] * 100)
        a = run_cqn(counts, annotation).normalization_factors
        b = run_cqn(counts, as_percent).normalization_factors
        pd.testing.assert_frame_equal(a, b, check_exact=False, atol=1e-6)


def test_summarize_fits(cqn_input):
    counts, annotation = cqn_input
    result = run_cqn(counts, annotation)
    fits = summarize_fits(result, annotation, n_bins=10)

    assert set(fits) == {"gc", "length"}
    assert list(fits["gc"].columns) == list(counts.columns)
    assert 1 < len(fits["gc"]) <= 10
