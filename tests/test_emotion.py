"""Tests for lexicon-based emotion scoring and message tagging."""

import pytest

from chatmem.lexicons import EmotionLexicon
from chatmem.schemas import CONTEXTUAL_DIMENSIONS, PRIMARY_DIMENSIONS, SOCIAL_DIMENSIONS
from chatmem.services.emotion import NEUTRAL, EmotionScorer, EmotionTagger

SAMPLES = [
    "",
    "   ",
    "12345",
    "Привет, как дела?",
    "Ахаха, это супер круто!!! 😂🔥",
    "Мне так грустно и плохо... 😭💔",
    "Это бред и чушь, ты не согласен со мной? Идиот!",
    "ВАУ ОГО НЕВЕРОЯТНО!!!!!!!!",
    "Боюсь, страшно, паника, ужас, кошмар",
    "поддерживаю, помогу, держись, +1, вместе справимся 🤝",
    "ага, ну да, гений /s",
    "a" * 500,
    "🎉" * 40,
]


@pytest.fixture
def scorer() -> EmotionScorer:
    return EmotionScorer()


class TestEmotionScorer:
    @pytest.mark.parametrize("text", SAMPLES)
    def test_dimensions_within_bounds(self, scorer, text):
        result = scorer.score(text)
        dims = result.dimensions()
        assert len(dims) == len(PRIMARY_DIMENSIONS) + len(SOCIAL_DIMENSIONS) + len(CONTEXTUAL_DIMENSIONS)
        assert all(0.0 <= v <= 1.0 for v in dims.values())
        assert -1.0 <= result.valence <= 1.0
        assert 0.0 <= result.arousal <= 1.0
        assert 0.0 <= result.intensity <= 1.0
        assert 0.0 <= result.confidence <= 1.0

    @pytest.mark.parametrize("text", SAMPLES)
    def test_neutral_when_all_dimensions_weak(self, scorer, text):
        result = scorer.score(text)
        if max(result.dimensions().values()) <= 0.1:
            assert result.dominant == NEUTRAL
        else:
            assert result.dominant != NEUTRAL

    def test_empty_text_is_neutral(self, scorer):
        result = scorer.score("")
        assert result.dominant == NEUTRAL
        assert result.intensity == 0.0
        assert result.confidence == pytest.approx(0.05)

    def test_plain_digits_are_neutral(self, scorer):
        assert scorer.score("12345").dominant == NEUTRAL

    def test_joy_has_positive_valence(self, scorer):
        result = scorer.score("Ахаха, это супер круто!")
        assert result.primary.joy > 0
        assert result.valence > 0

    def test_hostility_has_negative_valence(self, scorer):
        result = scorer.score("Это бред и чушь")
        assert result.social.hostile > 0.3
        assert result.valence < 0

    def test_exclamations_and_caps_raise_enthusiasm(self, scorer):
        calm = scorer.score("ну нормально")
        loud = scorer.score("НУ НОРМАЛЬНО!!!")
        assert loud.contextual.enthusiasm > calm.contextual.enthusiasm
        assert loud.intensity > calm.intensity

    def test_dispute_in_recent_window_raises_seriousness(self, scorer):
        alone = scorer.score("давай обсудим")
        in_dispute = scorer.score("давай обсудим", recent_window=["я не согласен", "ты не прав"])
        assert in_dispute.social.serious >= alone.social.serious

    def test_short_word_matches_whole_word_only(self, scorer):
        # "рад" must not fire inside "радиатор"
        assert scorer.score("радиатор сломался").social.friendly == 0.0
        assert scorer.score("рад тебя видеть").social.friendly > 0.0

    def test_same_input_same_score(self, scorer):
        text = "Ого, вот это новость! 😲"
        assert scorer.score(text) == scorer.score(text)


class TestSyntheticLexicon:
    def test_scoring_uses_injected_lexicon(self):
        lexicon = EmotionLexicon(
            primary={"joy": ["blorp"], "anger": ["grrk"]},
            social={"friendly": ["zim"]},
        )
        scorer = EmotionScorer(lexicon)
        assert scorer.score("blorp blorp").dominant == "joy"
        assert scorer.score("grrk").dominant == "anger"
        # the default Russian words mean nothing to this lexicon
        assert scorer.score("радость").primary.joy == 0.0

    def test_unknown_dimension_rejected(self):
        with pytest.raises(ValueError):
            EmotionLexicon(primary={"euphoria": ["wow"]})


class TestEmotionTagger:
    @pytest.fixture
    def tagger(self) -> EmotionTagger:
        return EmotionTagger(aliases=["саня"])

    @pytest.mark.parametrize(
        "text,expected",
        [
            ("Это супер!", "positive"),
            ("Меня всё бесит", "negative"),
            ("Вау", "excited"),
            ("Привет, как дела?", "friendly"),
            ("ну и ну!!", "excited"),
            ("где все?", "curious"),
            ("саня ты тут", "engaging"),
            ("ладно", "neutral"),
        ],
    )
    def test_tags(self, tagger, text, expected):
        assert tagger.tag(text) == expected
