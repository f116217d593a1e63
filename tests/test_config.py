import pytest

from conftest import make_config
from streamrec.config import (
    EndpointConfig,
    EndpointRule,
    FeatureConfig,
    LMConfig,
    ModelConfig,
    RecognizerConfig,
)
from streamrec.errors import ConfigurationError


class TestRecognizerConfig:
    def test_defaults_are_valid(self):
        config = RecognizerConfig()
        config.validate()
        assert config.is_valid()
        assert config.feat_config.frame_shift_seconds == pytest.approx(0.01)

    def test_default_endpoint_rules(self):
        rules = EndpointConfig().rules
        assert rules == (
            EndpointRule(True, 2.4, 0.0),
            EndpointRule(True, 1.2, 5.0),
            EndpointRule(True, 0.0, 20.0),
        )

    @pytest.mark.parametrize(
        "overrides",
        [
            {"decoding_method": "beam"},
            {"decoding_method": "modified_beam_search", "max_active_paths": 0},
            {"hotwords_file": "/nonexistent/hotwords.txt"},
            {"blank_penalty": -1.0},
            {"feat_config": FeatureConfig(feature_dim=0)},
            {"feat_config": FeatureConfig(feature_dim=80)},
            {"model_config": ModelConfig(feat_in=6, chunk_size=6, subsampling_factor=4)},
            {
                "endpoint_config": EndpointConfig(
                    rule1=EndpointRule(True, -1.0, 0.0)
                )
            },
        ],
    )
    def test_invalid_configs_are_rejected(self, overrides):
        config = make_config(**overrides)
        with pytest.raises(ConfigurationError):
            config.validate()
        assert not config.is_valid()

    def test_endpoint_rules_ignored_when_disabled(self):
        config = make_config(
            enable_endpoint=False,
            endpoint_config=EndpointConfig(rule2=EndpointRule(True, -1.0, 0.0)),
        )
        assert config.is_valid()

    def test_beam_size_only_checked_for_beam_search(self):
        assert make_config(max_active_paths=0).is_valid()

    def test_lm_checked_only_for_beam_search(self, tmp_path):
        missing = LMConfig(model=str(tmp_path / "missing.safetensors"))
        assert make_config(lm_config=missing).is_valid()
        assert not make_config(
            decoding_method="modified_beam_search", lm_config=missing
        ).is_valid()

    def test_existing_hotwords_file(self, tmp_path):
        path = tmp_path / "hotwords.txt"
        path.write_text("▁HE LL O\n", encoding="utf-8")
        assert make_config(hotwords_file=str(path)).is_valid()

    def test_str_lists_fields(self):
        text = str(make_config(decoding_method="modified_beam_search"))
        assert text.startswith("RecognizerConfig(")
        assert "decoding_method='modified_beam_search'" in text
        assert "max_active_paths=4" in text
