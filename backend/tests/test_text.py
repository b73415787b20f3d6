import random

import pytest

from typerace.services.race.text import RACE_WORDS, generate_race_text, vocabulary_for


@pytest.mark.parametrize('difficulty', ['beginner', 'easy', 'medium', 'hard', 'expert'])
def test_every_tier_draws_from_its_vocabulary(difficulty):
    text = generate_race_text(difficulty, 40)
    words = text.split(' ')
    assert len(words) == 40
    assert set(words) <= set(RACE_WORDS[difficulty])


def test_unknown_difficulty_falls_back_to_medium():
    assert vocabulary_for('nightmare') is RACE_WORDS['medium']
    assert vocabulary_for(None) is RACE_WORDS['medium']
    assert vocabulary_for(' HARD ') is RACE_WORDS['hard']


def test_seeded_generator_is_reproducible():
    first = generate_race_text('easy', 25, rng=random.Random(7))
    second = generate_race_text('easy', 25, rng=random.Random(7))
    assert first == second


def test_words_are_drawn_with_replacement():
    words = generate_race_text('beginner', 500).split(' ')
    assert len(words) == 500
    assert len(set(words)) < len(words)


def test_zero_words_is_empty():
    assert generate_race_text('easy', 0) == ''
