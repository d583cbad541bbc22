"""Tests for the clause store and confidence-propagating queries."""

import pytest
from psa.reasoning import Atom, Compound, ReasoningEngine, Var, problem_key
from psa.reasoning.engine import Clause

from conftest import make_solution

# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def kb() -> ReasoningEngine:
    engine = ReasoningEngine()
    engine.add_fact(Compound("solves", "nvidia_driver", "modprobe nvidia"), 0.9)
    engine.add_fact(Compound("solves", "nvidia_driver", "akmods --force"), 0.95)
    return engine


# ---------------------------------------------------------------------------
# Clauses
# ---------------------------------------------------------------------------


class TestClause:
    def test_confidence_must_be_in_range(self):
        with pytest.raises(ValueError):
            Clause(Atom("a"), [], 1.5)
        with pytest.raises(ValueError):
            Clause(Atom("a"), [], -0.1)

    def test_fact_vs_rule(self):
        assert Clause(Atom("a")).is_fact
        assert not Clause(Atom("a"), [Atom("b")]).is_fact

    def test_rename_variables(self):
        clause = Clause(Compound("p", Var("X")), [Compound("q", Var("X"), Var("Y"))])
        renamed = clause.rename_variables("_7")
        assert renamed.head == Compound("p", Var("X_7"))
        assert renamed.body == [Compound("q", Var("X_7"), Var("Y_7"))]
        assert clause.head == Compound("p", Var("X"))


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------


class TestQuery:
    def test_two_facts_ordered_by_confidence(self, kb):
        answers = kb.query(Compound("solves", "nvidia_driver", Var("Solution")))
        assert len(answers) == 2
        assert [a.confidence for a in answers] == [0.95, 0.9]
        assert answers[0].binding("Solution") == Atom("akmods --force")
        assert answers[1].binding("Solution") == Atom("modprobe nvidia")

    def test_no_match(self, kb):
        assert kb.query(Compound("solves", "wifi", Var("S"))) == []

    def test_ties_keep_store_order(self):
        engine = ReasoningEngine()
        engine.add_fact(Compound("p", "first"), 0.5)
        engine.add_fact(Compound("p", "second"), 0.5)
        answers = engine.query(Compound("p", Var("X")))
        assert [a.binding("X") for a in answers] == [Atom("first"), Atom("second")]

    def test_rule_confidence_is_product(self):
        engine = ReasoningEngine()
        engine.add_fact(Compound("symptom", "black_screen", "nvidia"), 0.8)
        engine.add_fact(Compound("fix", "nvidia", "akmods --force"), 0.9)
        engine.add_rule(
            Compound("solves", Var("P"), Var("S")),
            [Compound("symptom", Var("P"), Var("D")), Compound("fix", Var("D"), Var("S"))],
            0.5,
        )
        answers = engine.query(Compound("solves", "black_screen", Var("S")))
        assert len(answers) == 1
        assert answers[0].binding("S") == Atom("akmods --force")
        assert answers[0].confidence == pytest.approx(0.5 * 0.8 * 0.9)

    def test_greedy_takes_best_subgoal_answer_only(self):
        engine = ReasoningEngine()
        # best driver answer has no fix; the weaker one would, but is never tried
        engine.add_fact(Compound("driver", "gpu", "nouveau"), 0.9)
        engine.add_fact(Compound("driver", "gpu", "nvidia"), 0.6)
        engine.add_fact(Compound("fix", "nvidia", "akmods"), 1.0)
        engine.add_rule(
            Compound("solves", Var("P"), Var("S")),
            [Compound("driver", Var("P"), Var("D")), Compound("fix", Var("D"), Var("S"))],
        )
        assert engine.query(Compound("solves", "gpu", Var("S"))) == []

    def test_failed_body_goal_fails_clause(self):
        engine = ReasoningEngine()
        engine.add_rule(Compound("p", Var("X")), [Compound("missing", Var("X"))])
        assert engine.query(Compound("p", "a")) == []

    def test_caller_variables_do_not_clash(self):
        engine = ReasoningEngine()
        engine.add_fact(Compound("edge", "a", "b"))
        engine.add_rule(Compound("path", Var("X"), Var("Y")), [Compound("edge", Var("X"), Var("Y"))])
        answers = engine.query(Compound("path", Var("Y"), Var("X")))
        assert len(answers) == 1
        assert answers[0].binding("Y") == Atom("a")
        assert answers[0].binding("X") == Atom("b")

    def test_recursive_rules_hit_depth_limit(self):
        engine = ReasoningEngine(max_depth=8)
        engine.add_rule(Compound("loop", Var("X")), [Compound("loop", Var("X"))])
        assert engine.query(Compound("loop", "a")) == []

    def test_prove_body(self, kb):
        proved = kb.prove_body([Compound("solves", "nvidia_driver", Var("S"))], {})
        assert proved is not None
        theta, confidence = proved
        assert confidence == 0.95

    def test_counts(self, kb):
        kb.add_rule(Compound("p", Var("X")), [Compound("q", Var("X"))])
        assert len(kb) == 3
        assert kb.fact_count == 2
        assert kb.rule_count == 1


# ---------------------------------------------------------------------------
# Learned solutions and persistence
# ---------------------------------------------------------------------------


class TestLearnedSolutions:
    def test_problem_key(self):
        assert problem_key("NVIDIA driver!") == Atom("nvidia_driver")
        assert problem_key("  wifi -- drops ") == Atom("wifi_drops")

    def test_learn_solution_confidence(self):
        engine = ReasoningEngine()
        engine.learn_solution(make_solution(successes=9, failures=0, problem="NVIDIA driver"))
        found = engine.solutions_for("nvidia driver")
        assert found == [("akmods --force", pytest.approx(0.9))]

    def test_solutions_for_unknown_problem(self):
        assert ReasoningEngine().solutions_for("printer on fire") == []


class TestPersistence:
    def test_yaml_round_trip(self, kb, tmp_path):
        kb.add_rule(Compound("p", Var("X")), [Compound("q", Var("X"))], 0.7)
        path = tmp_path / "knowledge.yaml"
        kb.to_yaml(path)

        loaded = ReasoningEngine.from_yaml(path)
        assert len(loaded) == 3
        assert [c.head for c in loaded] == [c.head for c in kb]
        answers = loaded.query(Compound("solves", "nvidia_driver", Var("S")))
        assert [a.confidence for a in answers] == [0.95, 0.9]
