"""LD pruning, proxy search and correlation extraction over block-diagonal LD."""

import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence, Union

import numpy as np

from .ld import LDBlockList


@dataclass(frozen=True)
class ProxyResult:
    """Proxies of one query variant.

    Attributes:
        index: The query variant
        proxies: Variants in the same block with r^2 at or above the threshold,
            in order of decreasing r^2 (the query itself comes first)
        correlation: Correlation of each proxy with the query variant
        matrix: Correlation matrix among the proxies, if requested
    """
    index: int
    proxies: np.ndarray
    correlation: np.ndarray
    matrix: Optional[np.ndarray] = None


def ld_prune(
    ld: Optional[LDBlockList],
    pvalue: Optional[np.ndarray] = None,
    r2_thresh: float = 0.1,
    pval_thresh: float = 1.0,
    variants: Optional[Sequence[int]] = None,
    rng: Optional[np.random.Generator] = None,
) -> np.ndarray:
    """Greedy LD pruning (clumping).

    Variants are visited in order of increasing p-value, or in random order
    if no p-values are given. Each visited variant that has not been pruned
    is kept, and every variant in its block with r^2 >= r2_thresh is pruned.
    Variants in different blocks never prune each other.

    Args:
        ld: Block-diagonal LD; None means all variants are independent
        pvalue: Optional length-J vector of p-values used as priority
        r2_thresh: Squared-correlation threshold
        pval_thresh: Only variants with p-value <= pval_thresh are considered
        variants: Optional subset of variant indices to prune among
        rng: Random number generator for the order when pvalue is None

    Returns:
        Sorted indices of the kept variants
    """
    if ld is None and pvalue is None:
        raise ValueError("Either ld or pvalue must be given")
    num_variants = ld.size if ld is not None else len(pvalue)
    candidates = np.arange(num_variants) if variants is None else np.unique(np.asarray(variants, dtype=int))

    if pvalue is not None:
        pvalue = np.asarray(pvalue, dtype=float).reshape(-1)
        if len(pvalue) != num_variants:
            raise ValueError(f"pvalue has length {len(pvalue)}, expected {num_variants}")
        candidates = candidates[pvalue[candidates] <= pval_thresh]
        order = candidates[np.argsort(pvalue[candidates], kind='stable')]
    else:
        rng = np.random.default_rng() if rng is None else rng
        order = rng.permutation(candidates)

    if ld is None:
        return np.sort(order)

    considered = np.zeros(num_variants, dtype=bool)
    considered[candidates] = True
    was_pruned = np.zeros(num_variants, dtype=bool)
    is_index = np.zeros(num_variants, dtype=bool)

    for i in order:
        if was_pruned[i]:
            continue
        is_index[i] = True

        # Prune candidates in high LD with the new index variant
        block_indices, r = ld.correlations(i)
        to_prune = block_indices[(r ** 2 >= r2_thresh) & considered[block_indices]]
        was_pruned[to_prune] = True

    kept = np.flatnonzero(is_index)
    logging.info(f"LD pruning kept {len(kept)} of {len(candidates)} variants")
    return kept


def ld_proxy(
    ld: LDBlockList,
    index: Union[int, Sequence[int]],
    r2_thresh: float = 0.64,
    return_matrix: bool = False,
) -> Union[ProxyResult, List[ProxyResult]]:
    """Find variants in high LD with one or more query variants.

    Args:
        ld: Block-diagonal LD
        index: A variant index, or a sequence of them
        r2_thresh: Minimum squared correlation with the query
        return_matrix: Whether to include the correlation matrix among proxies

    Returns:
        A ProxyResult, or a list of them if index is a sequence
    """
    if not np.isscalar(index):
        return [ld_proxy(ld, int(i), r2_thresh, return_matrix) for i in index]

    index = int(index)
    block_indices, r = ld.correlations(index)
    r2 = r ** 2
    in_ld = np.flatnonzero(r2 >= r2_thresh)
    ranked = in_ld[np.argsort(-r2[in_ld], kind='stable')]
    proxies = block_indices[ranked]

    # The query ranks first even when tied with a perfect proxy
    if index in proxies:
        proxies = np.concatenate([[index], proxies[proxies != index]])
        ranked = proxies - block_indices[0]

    return ProxyResult(
        index=index,
        proxies=proxies,
        correlation=r[ranked],
        matrix=ld.extract(proxies) if return_matrix else None,
    )


def extract_ld(ld: LDBlockList, indices: Sequence[int]) -> np.ndarray:
    """Correlation matrix among arbitrary variants, zero across blocks."""
    return ld.extract(indices)
