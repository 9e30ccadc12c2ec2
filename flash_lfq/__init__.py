"""
FlashLFQ: label-free quantification for LC-MS proteomics

Locates the elution peak of every identified peptide in MS1 data, recovers
peaks between runs by retention time alignment, normalizes intensities over
the experimental design, and rolls peptides up to protein groups.
"""

__version__ = "0.1.0"

from .data_model import (
    SpectraFile,
    ProteinGroup,
    Identification,
    IndexedPeak,
    IsotopicEnvelope,
    ChromatographicPeak,
    Peptide,
    DetectionType,
)
from .isotopes import (
    IsotopeDistribution,
    IsotopeDistributionCache,
    averagine_distribution,
)
from .spectral_index import (
    Ms1Scan,
    SpectralIndex,
)
from .envelopes import EnvelopeDetector
from .peak_builder import (
    PeakBuilder,
    PeakBuilderParams,
)
from .alignment import (
    RetentionTimeAligner,
    RtAlignment,
)
from .mbr import MatchBetweenRunsResolver
from .normalization import (
    NormalizationPass,
    NormalizationResult,
    DEFAULT_PASSES,
    compute_scale_factors,
    normalize_peaks,
)
from .rollup import (
    tukey_median_polish,
    MedianPolishResult,
    ProteinQuantEstimator,
    TopNEstimator,
    MedianPolishWeightedEstimator,
    quantify_proteins,
)
from .results import FlashLfqResults
from .engine import (
    EngineConfig,
    FlashLfqEngine,
)
from .data_io import (
    load_ms1_scans,
    load_identifications,
    load_experimental_design,
)
