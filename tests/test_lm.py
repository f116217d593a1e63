import numpy as np
import pytest
import torch
from safetensors.torch import save_file

from conftest import BLK, HE, TOKENS, WORLD, make_config
from streamrec.config import LMConfig
from streamrec.engine.decoding import ModifiedBeamSearch
from streamrec.engine.recognizer import Recognizer
from streamrec.errors import ConfigurationError
from streamrec.lm import BigramLanguageModel

V = len(TOKENS)


def prefer(token: int) -> torch.Tensor:
    log_probs = torch.full((V + 1, V), -10.0)
    log_probs[:, token] = 0.0
    return log_probs


class TestBigramLanguageModel:
    def test_rows(self):
        table = torch.log_softmax(torch.randn(V + 1, V), dim=-1)
        lm = BigramLanguageModel(table)
        lm.validate(V)
        assert torch.equal(lm.next_token_log_probs(None), table[-1])
        assert torch.equal(lm.next_token_log_probs(HE), table[HE])

    def test_file_round_trip(self, tmp_path):
        table = torch.log_softmax(torch.randn(V + 1, V), dim=-1)
        path = tmp_path / "lm.safetensors"
        BigramLanguageModel(table).save(path)
        loaded = BigramLanguageModel.from_config(LMConfig(model=str(path)))
        assert torch.equal(loaded.log_probs, table)

    def test_missing_tensor(self, tmp_path):
        path = tmp_path / "lm.safetensors"
        save_file({"weights": torch.zeros(V + 1, V)}, str(path))
        with pytest.raises(ConfigurationError):
            BigramLanguageModel.from_file(path)

    @pytest.mark.parametrize(
        "table",
        [
            torch.zeros(V, V),
            torch.zeros(V + 2, V + 1),
            torch.zeros(V + 1),
            torch.full((V + 1, V), float("-inf")),
        ],
    )
    def test_validation(self, table):
        with pytest.raises(ConfigurationError):
            BigramLanguageModel(table).validate(V)


class TestShallowFusion:
    def test_lm_changes_the_winner(self):
        scores = np.zeros((1, V), dtype=np.float32)
        scores[0, HE] = 2.0
        scores[0, WORLD] = 1.8
        log_probs = torch.log_softmax(torch.from_numpy(scores).double(), dim=-1)

        plain = ModifiedBeamSearch(blank_id=BLK, vocab_size=V, max_active_paths=4)
        result = plain.init_result()
        plain.decode(log_probs, result)
        assert result.arena.tokens(result.best().node) == [HE]

        fused = ModifiedBeamSearch(
            blank_id=BLK,
            vocab_size=V,
            max_active_paths=4,
            lm=BigramLanguageModel(prefer(WORLD)),
            lm_scale=1.0,
        )
        result = fused.init_result()
        fused.decode(log_probs, result)
        assert result.arena.tokens(result.best().node) == [WORLD]

    def test_recognizer_loads_lm_from_config(self, model, symbol_table, tmp_path):
        path = tmp_path / "lm.safetensors"
        BigramLanguageModel(prefer(WORLD)).save(path)
        config = make_config(
            decoding_method="modified_beam_search",
            lm_config=LMConfig(model=str(path), scale=1.0),
        )
        recognizer = Recognizer(config, model, symbol_table=symbol_table)
        assert recognizer.policy.lm is not None
        assert recognizer.policy.lm_scale == 1.0

    def test_vocabulary_mismatch_fails_at_construction(
        self, model, symbol_table, tmp_path
    ):
        path = tmp_path / "lm.safetensors"
        BigramLanguageModel(torch.zeros(V + 2, V + 1)).save(path)
        config = make_config(
            decoding_method="modified_beam_search",
            lm_config=LMConfig(model=str(path)),
        )
        with pytest.raises(ConfigurationError):
            Recognizer(config, model, symbol_table=symbol_table)
