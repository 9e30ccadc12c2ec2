"""Tests for CLI module."""

import json
import tempfile
from pathlib import Path

import pandas as pd
import pytest

from flash_lfq.cli import (
    _deep_merge,
    engine_config_from_dict,
    load_config,
    main,
)
from flash_lfq.testing import PEPTIDE_MASSES, InMemoryScanLoader, one_peptide_per_scan


class TestDeepMerge:
    """Tests for deep merge utility."""

    def test_simple_merge(self):
        """Test merging flat dictionaries."""
        base = {"a": 1, "b": 2}
        override = {"b": 3, "c": 4}
        result = _deep_merge(base, override)
        assert result == {"a": 1, "b": 3, "c": 4}

    def test_nested_merge(self):
        """Test merging nested dictionaries."""
        base = {
            "section1": {"a": 1, "b": 2},
            "section2": {"c": 3},
        }
        override = {
            "section1": {"b": 20, "d": 4},
            "section3": {"e": 5},
        }
        result = _deep_merge(base, override)
        assert result["section1"] == {"a": 1, "b": 20, "d": 4}
        assert result["section2"] == {"c": 3}
        assert result["section3"] == {"e": 5}

    def test_base_not_modified(self):
        """Test that the defaults dictionary is left untouched."""
        base = {"section": {"a": 1}}
        _deep_merge(base, {"section": {"a": 2}})
        assert base == {"section": {"a": 1}}


class TestLoadConfig:
    """Tests for configuration loading."""

    def test_default_config(self):
        """Test loading default configuration."""
        config = load_config(None)

        assert config["quantification"]["ppm_tolerance"] == 10.0
        assert config["match_between_runs"]["enabled"] is False
        assert config["protein_quant"]["method"] == "top_n"
        assert config["output"]["format"] == "tsv"

    def test_yaml_override(self):
        """Test loading config from YAML file."""
        with tempfile.NamedTemporaryFile(mode="w", suffix=".yaml", delete=False) as f:
            f.write("""
quantification:
  ppm_tolerance: 5.0
match_between_runs:
  enabled: true
  rt_window: 0.5
protein_quant:
  method: weighted
""")
            f.flush()
            config_path = Path(f.name)

        try:
            config = load_config(config_path)
            assert config["quantification"]["ppm_tolerance"] == 5.0
            assert config["match_between_runs"]["enabled"] is True
            assert config["match_between_runs"]["rt_window"] == 0.5
            assert config["protein_quant"]["method"] == "weighted"
            # Defaults should be preserved
            assert config["quantification"]["missed_scans_allowed"] == 2
            assert config["match_between_runs"]["ppm_tolerance"] == 10.0
        finally:
            config_path.unlink()

    def test_empty_yaml(self, tmp_path):
        """Test that an empty file yields the defaults."""
        config_path = tmp_path / "empty.yaml"
        config_path.write_text("")
        assert load_config(config_path) == load_config(None)


class TestEngineConfigFromDict:
    """Tests for mapping the YAML sections onto engine settings."""

    def test_defaults_map_to_engine_defaults(self):
        config = engine_config_from_dict(load_config(None))

        assert config.ppm_tolerance == 10.0
        assert not config.match_between_runs
        assert not config.advanced_protein_quant
        assert config.top_n == 3

    def test_weighted_method(self):
        config = load_config(None)
        config["protein_quant"]["method"] = "weighted"
        config["match_between_runs"]["local_alignment_window"] = 2.0

        engine_config = engine_config_from_dict(config, silent=True)

        assert engine_config.advanced_protein_quant
        assert engine_config.mbr_local_alignment_window == 2.0
        assert engine_config.silent

    def test_unknown_method(self):
        config = load_config(None)
        config["protein_quant"]["method"] = "maxlfq"
        with pytest.raises(ValueError, match="Unknown protein_quant method"):
            engine_config_from_dict(config)


SEQUENCES = ['PEPTIDE', 'PEPTIDEV', 'PEPTIDEVV']
RTS = [1.0, 1.1, 1.2]


@pytest.fixture
def run_inputs(tmp_path, monkeypatch):
    """Design and identification tables for two runs, with scans served from memory."""
    spectra_dir = tmp_path / "spectra"
    spectra_dir.mkdir()
    loader = InMemoryScanLoader()
    for name, amount in (("run1", 1e6), ("run2", 2e6)):
        (spectra_dir / f"{name}.mzML").touch()
        loader.add(spectra_dir / f"{name}.mzML", one_peptide_per_scan(SEQUENCES, RTS, amount))
    monkeypatch.setattr("flash_lfq.engine.load_ms1_scans", loader)

    design = tmp_path / "ExperimentalDesign.tsv"
    pd.DataFrame({
        'FileName': ['run1', 'run2'],
        'Condition': ['a', 'a'],
        'Biorep': [1, 1],
        'Fraction': [1, 1],
        'Techrep': [1, 2],
    }).to_csv(design, sep='\t', index=False)

    ids = tmp_path / "ids.tsv"
    pd.DataFrame([
        {
            'File Name': f"{name}.mzML",
            'Base Sequence': seq,
            'Full Sequence': seq,
            'Peptide Monoisotopic Mass': PEPTIDE_MASSES[seq],
            'Scan Retention Time': rt + 0.01,
            'Precursor Charge': 1,
            'Protein Accession': 'P1',
        }
        for name in ("run1", "run2")
        for seq, rt in zip(SEQUENCES, RTS)
    ]).to_csv(ids, sep='\t', index=False)

    return {'design': design, 'ids': ids, 'spectra_dir': spectra_dir, 'loader': loader}


class TestRunCommand:
    """Tests for the run subcommand."""

    def test_run_writes_tables(self, tmp_path, run_inputs):
        out = tmp_path / "out"

        rc = main([
            'run', '-i', str(run_inputs['ids']), '-d', str(run_inputs['design']),
            '-s', str(run_inputs['spectra_dir']), '-o', str(out), '--threads', '1',
        ])

        assert rc == 0
        for name in ('QuantifiedPeaks', 'QuantifiedPeptides', 'QuantifiedProteins'):
            assert (out / f"{name}.tsv").exists()

        proteins = pd.read_csv(out / "QuantifiedProteins.tsv", sep='\t')
        assert proteins.loc[0, 'Intensity_run1'] == pytest.approx(3e6)
        assert proteins.loc[0, 'Intensity_run2'] == pytest.approx(6e6)

        metadata = json.loads((out / "run_metadata.json").read_text())
        assert metadata['n_peptides'] == 3
        assert metadata['parameters']['max_threads'] == 1
        assert len(metadata['spectra_files']) == 2

    def test_normalize_switch(self, tmp_path, run_inputs):
        out = tmp_path / "out"

        rc = main([
            'run', '-i', str(run_inputs['ids']), '-d', str(run_inputs['design']),
            '-o', str(out), '--normalize', '-s', str(run_inputs['spectra_dir']),
        ])

        assert rc == 0
        peptides = pd.read_csv(out / "QuantifiedPeptides.tsv", sep='\t')
        assert list(peptides['Intensity_run1']) == pytest.approx(list(peptides['Intensity_run2']))

    def test_config_file_output_settings(self, tmp_path, run_inputs):
        config = tmp_path / "config.yaml"
        config.write_text("output:\n  format: parquet\n  prefix: exp\n")
        out = tmp_path / "out"

        rc = main([
            'run', '-i', str(run_inputs['ids']), '-d', str(run_inputs['design']),
            '-s', str(run_inputs['spectra_dir']), '-o', str(out), '-c', str(config),
        ])

        assert rc == 0
        assert (out / "exp_QuantifiedPeptides.parquet").exists()

    def test_no_command(self):
        assert main([]) == 1
