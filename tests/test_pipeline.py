"""End-to-end tests for the resolution pipeline with a scripted oracle."""

import threading

import pytest

from reqgraph.corpus import CorpusIndex
from reqgraph.errors import NoTargetFound
from reqgraph.models import NodeKind, RunState, RunStatus
from reqgraph.pipeline import CancelToken, ResolutionPipeline
from reqgraph.storage import GraphStore


class TestScenarios:
    def test_login_scenario(self, login_corpus, fake_oracle):
        oracle = fake_oracle(
            target="https://shop.test/orders/42",
            dynamic_parts={"https://shop.test/orders/42": ["sess_9f3"]},
        )
        result = ResolutionPipeline(login_corpus, oracle, max_steps=20).run("view order 42")

        assert result.status is RunStatus.COMPLETED
        assert result.status_text == "completed"
        graph = result.graph
        master = graph.require_node(result.master_node)
        assert master.kind is NodeKind.MASTER
        assert master.request.url == "https://shop.test/orders/42"
        requests = graph.nodes_of_kind(NodeKind.REQUEST)
        assert [n.request.url for n in requests] == ["https://shop.test/login"]
        assert graph.edges() == [(result.master_node, requests[0].node_id)]
        assert result.cycle is None
        assert result.iterations == 2
        assert result.steps_used == 8

    def test_csrf_cookie_scenario(self, login_corpus, fake_oracle, csrf_cookie, make_entry):
        transfer = make_entry(
            "POST", "https://shop.test/transfer", '{"ok": true}',
            headers={"X-CSRF-Token": "tok_ab12"}, body={"amount": 10},
        )
        corpus = CorpusIndex(login_corpus.all_entries() + [transfer], cookies=[csrf_cookie])
        oracle = fake_oracle(
            target="https://shop.test/transfer",
            dynamic_parts={"https://shop.test/transfer": ["tok_ab12"]},
        )
        result = ResolutionPipeline(corpus, oracle).run("send money")

        assert result.completed
        cookies = result.graph.nodes_of_kind(NodeKind.COOKIE)
        assert [c.label for c in cookies] == ["csrf"]
        assert result.graph.edges() == [(result.master_node, cookies[0].node_id)]
        assert result.graph.nodes_of_kind(NodeKind.REQUEST) == []
        assert oracle.calls["pick_simplest"] == []

    def test_ambiguous_producer_falls_back(self, fake_oracle, make_entry):
        corpus = CorpusIndex([
            make_entry("GET", "https://a.test/first", '{"id": "id_77"}'),
            make_entry("GET", "https://a.test/second", '{"item": "id_77"}'),
            make_entry("GET", "https://a.test/item", '{"name": "lamp"}', query={"id": "id_77"}),
        ])
        oracle = fake_oracle(
            target="https://a.test/item",
            dynamic_parts={"https://a.test/item?id=id_77": ["id_77"]},
            fail={"pick_simplest"},
        )
        result = ResolutionPipeline(corpus, oracle).run("open the item")

        assert result.completed
        producers = result.graph.nodes_of_kind(NodeKind.REQUEST)
        assert [p.request.url for p in producers] == ["https://a.test/first"]


class TestBudget:
    def test_budget_stops_after_three_iterations(self, chain_corpus, chain_oracle):
        result = ResolutionPipeline(chain_corpus, chain_oracle, max_steps=11).run("step zero")

        assert result.status_text == "aborted: budget"
        assert result.iterations == 3
        assert result.steps_used == 11
        # master plus one producer discovered per iteration
        assert len(result.graph) == 4
        urls = sorted(n.request.url for n in result.graph.nodes())
        assert urls == [f"https://api.test/step/{i}" for i in range(4)]

    def test_generous_budget_resolves_whole_chain(self, chain_corpus, chain_oracle):
        result = ResolutionPipeline(chain_corpus, chain_oracle, max_steps=100).run("step zero")

        assert result.completed
        assert result.iterations == 10
        assert result.steps_used == 32
        assert len(result.graph) == 10
        order = result.graph.topological_order(sink_first=True)
        assert result.graph.require_node(order[0]).request.url == "https://api.test/step/9"
        assert order[-1] == result.master_node

    def test_budget_too_small_for_any_iteration(self, chain_corpus, chain_oracle):
        result = ResolutionPipeline(chain_corpus, chain_oracle, max_steps=4).run("step zero")

        assert result.status_text == "aborted: budget"
        assert result.iterations == 0
        assert len(result.graph) == 1

    def test_budget_too_small_for_setup_skips_oracle(self, chain_corpus, chain_oracle):
        result = ResolutionPipeline(chain_corpus, chain_oracle, max_steps=1).run("step zero")

        assert result.status_text == "aborted: budget"
        assert result.steps_used == 0
        assert result.master_node is None
        assert len(result.graph) == 0
        assert chain_oracle.calls["identify_target"] == []


class TestTargetIdentification:
    def _corpus(self, make_entry, count):
        return CorpusIndex([make_entry("GET", f"https://a.test/ep/{i:02d}", "{}") for i in range(count)])

    def test_chunks_until_confident_answer(self, make_entry, fake_oracle):
        corpus = self._corpus(make_entry, 20)
        oracle = fake_oracle(target=["NONE", "https://a.test/ep/17"])
        state = RunState()

        key = ResolutionPipeline(corpus, oracle, url_chunk_size=15).identify_target("goal", state)

        assert key == "https://a.test/ep/17"
        assert state.target_url == key
        assert [len(chunk) for chunk in oracle.calls["identify_target"]] == [15, 5]

    def test_short_and_none_answers_rejected(self, make_entry, fake_oracle):
        corpus = self._corpus(make_entry, 3)
        oracle = fake_oracle(target=["ep/1", "none", "  "])
        with pytest.raises(NoTargetFound):
            ResolutionPipeline(corpus, oracle, url_chunk_size=1).identify_target("goal", RunState())
        assert len(oracle.calls["identify_target"]) == 3

    def test_oracle_failure_skips_chunk(self, make_entry, fake_oracle):
        corpus = self._corpus(make_entry, 2)
        oracle = fake_oracle(fail={"identify_target"})
        with pytest.raises(NoTargetFound):
            ResolutionPipeline(corpus, oracle, url_chunk_size=1).identify_target("goal", RunState())
        assert len(oracle.calls["identify_target"]) == 2

    def test_fuzzy_answer_resolves_to_corpus_key(self, make_entry, fake_oracle):
        corpus = self._corpus(make_entry, 3)
        oracle = fake_oracle(target="HTTPS://A.TEST/EP/02/")
        key = ResolutionPipeline(corpus, oracle).identify_target("goal", RunState())
        assert key == "https://a.test/ep/02"

    def test_answer_outside_corpus(self, make_entry, fake_oracle):
        corpus = self._corpus(make_entry, 2)
        with pytest.raises(NoTargetFound, match="not in the traffic"):
            ResolutionPipeline(corpus, fake_oracle(target="https://other.test/x")).run("goal")

    def test_empty_endpoint_list(self, fake_oracle):
        with pytest.raises(NoTargetFound):
            ResolutionPipeline(CorpusIndex([]), fake_oracle()).run("goal")

    def test_graphql_operation_target(self, make_entry, fake_oracle):
        corpus = CorpusIndex([
            make_entry("POST", "https://a.test/graphql", '{"a": 1}', body={"operationName": "Cart"}),
            make_entry("POST", "https://a.test/graphql", '{"b": 1}', body={"operationName": "Checkout"}),
        ])
        result = ResolutionPipeline(corpus, fake_oracle(target="https://a.test/graphql#op=Checkout")).run("pay")
        master = result.graph.require_node(result.master_node)
        assert master.request.body == {"operationName": "Checkout"}


class TestExtractionAndBinding:
    def test_script_node_skips_oracle(self, make_entry, fake_oracle):
        corpus = CorpusIndex([make_entry("GET", "https://a.test/bundle.js", "x", mime_type="application/javascript")])
        oracle = fake_oracle(target="https://a.test/bundle.js")
        result = ResolutionPipeline(corpus, oracle).run("goal")
        assert result.completed
        assert oracle.calls["identify_dynamic_parts"] == []

    def test_duplicate_dynamic_parts_removed(self, make_entry, fake_oracle):
        corpus = CorpusIndex([make_entry("GET", "https://a.test/m", "{}", headers={"A": "v1", "B": "v2"})])
        oracle = fake_oracle(target="https://a.test/m", dynamic_parts={"https://a.test/m": ["v1", "v2", "v1"]})
        pipeline = ResolutionPipeline(corpus, oracle)
        graph, state = GraphStore(), RunState()
        pipeline.identify_target("goal", state)
        pipeline.materialize_master(state, graph)

        parts = pipeline.extract_dynamic_parts(state, graph)

        assert parts == ["v1", "v2"]
        assert state.current_node == state.master_node
        assert state.work_queue == []

    def test_literal_input_values_bound(self, make_entry, fake_oracle):
        corpus = CorpusIndex([
            make_entry("POST", "https://a.test/signup", "{}", body={"email": "alice@example.com", "nonce": "n_55"}),
        ])
        oracle = fake_oracle(
            target="https://a.test/signup",
            dynamic_parts={"https://a.test/signup": ["alice@example.com", "n_55"]},
        )
        result = ResolutionPipeline(corpus, oracle).run("sign up", {"email": "alice@example.com", "other": "zzz"})

        master = result.graph.require_node(result.master_node)
        assert master.input_variables == {"email": "alice@example.com"}
        assert master.dynamic_parts == ["n_55"]
        unresolved = result.graph.nodes_of_kind(NodeKind.UNRESOLVED)
        assert [u.label for u in unresolved] == ["n_55"]

    def test_input_value_with_quote_bound(self, make_entry, fake_oracle):
        corpus = CorpusIndex([make_entry("POST", "https://a.test/people", "{}", body="last=O'Brien&tok=k_3")])
        oracle = fake_oracle(
            target="https://a.test/people",
            dynamic_parts={"https://a.test/people": ["O'Brien", "k_3"]},
        )
        result = ResolutionPipeline(corpus, oracle).run("add person", {"surname": "O'Brien"})

        master = result.graph.require_node(result.master_node)
        assert master.input_variables == {"surname": "O'Brien"}
        assert master.dynamic_parts == ["k_3"]

    def test_oracle_bound_inputs_must_occur_in_request(self, make_entry, fake_oracle):
        corpus = CorpusIndex([
            make_entry("GET", "https://a.test/slots", "[]", query={"day": "01/05/2024", "sid": "s_1"}),
        ])
        full_url = "https://a.test/slots?day=01/05/2024&sid=s_1"
        oracle = fake_oracle(
            target="https://a.test/slots",
            dynamic_parts={full_url: ["01/05/2024", "s_1"]},
            bound_inputs={"date": "01/05/2024", "other": "not-there"},
        )
        result = ResolutionPipeline(corpus, oracle).run("book", {"date": "2024-05-01", "other": "qqq"})

        master = result.graph.require_node(result.master_node)
        assert master.input_variables == {"date": "01/05/2024"}
        assert master.dynamic_parts == ["s_1"]

    def test_bound_input_failure_keeps_literal_matches(self, make_entry, fake_oracle):
        corpus = CorpusIndex([make_entry("GET", "https://a.test/u", "{}", query={"name": "bob", "t": "t_9"})])
        oracle = fake_oracle(
            target="https://a.test/u",
            dynamic_parts={"https://a.test/u?name=bob&t=t_9": ["bob", "t_9"]},
            fail={"identify_bound_inputs"},
        )
        result = ResolutionPipeline(corpus, oracle).run("lookup", {"name": "bob"})

        assert result.completed
        master = result.graph.require_node(result.master_node)
        assert master.input_variables == {"name": "bob"}
        assert master.dynamic_parts == ["t_9"]


class TestAbortPaths:
    def test_oracle_error_returns_partial_graph(self, login_corpus, fake_oracle):
        oracle = fake_oracle(target="https://shop.test/orders/42", fail={"identify_dynamic_parts"})
        result = ResolutionPipeline(login_corpus, oracle).run("view order")

        assert result.status is RunStatus.ABORTED
        assert result.status_text.startswith("aborted: error:")
        assert len(result.graph) == 1
        assert result.master_node in result.graph

    def test_cancel_before_start(self, login_corpus, fake_oracle):
        token = CancelToken()
        token.cancel()
        result = ResolutionPipeline(login_corpus, fake_oracle(target="https://shop.test/login")).run("x", cancel=token)

        assert result.status_text == "aborted: cancelled"
        assert result.master_node is None
        assert len(result.graph) == 0

    def test_cancel_between_iterations(self, chain_corpus, chain_oracle):
        token = CancelToken()
        seen = []

        def _hook(state, graph):
            seen.append(state.iterations)
            token.cancel()

        pipeline = ResolutionPipeline(chain_corpus, chain_oracle, max_steps=100, on_iteration=_hook)
        result = pipeline.run("step zero", cancel=token)

        assert seen == [1]
        assert result.status_text == "aborted: cancelled"
        assert result.iterations == 1
        assert len(result.graph) == 2

    def test_expired_deadline(self):
        assert CancelToken(timeout=0).cancelled
        assert not CancelToken(timeout=60).cancelled

    def test_cycle_is_reported_not_fatal(self, make_entry, fake_oracle):
        # a -> b via "tb", b -> a via "ta"
        a = make_entry("GET", "https://a.test/a", '{"x": "ta_1"}', headers={"T": "tb_1"})
        b = make_entry("GET", "https://a.test/b", '{"x": "tb_1"}', headers={"T": "ta_1"})
        oracle = fake_oracle(
            target="https://a.test/a",
            dynamic_parts={"https://a.test/a": ["tb_1"], "https://a.test/b": ["ta_1"]},
        )
        result = ResolutionPipeline(CorpusIndex([a, b]), oracle).run("loop")

        assert result.completed
        assert result.cycle
        assert len(result.graph) == 2


class TestIsolation:
    def test_concurrent_runs_do_not_share_state(self, chain_corpus, chain_oracle, login_corpus, fake_oracle):
        results = {}

        def _run(name, corpus, oracle):
            results[name] = ResolutionPipeline(corpus, oracle, max_steps=100).run(name)

        login_oracle = fake_oracle(
            target="https://shop.test/orders/42",
            dynamic_parts={"https://shop.test/orders/42": ["sess_9f3"]},
        )
        threads = [
            threading.Thread(target=_run, args=("chain", chain_corpus, chain_oracle)),
            threading.Thread(target=_run, args=("login", login_corpus, login_oracle)),
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(results["chain"].graph) == 10
        assert len(results["login"].graph) == 2

    def test_repeated_runs_start_fresh(self, login_corpus, fake_oracle):
        oracle = fake_oracle(
            target="https://shop.test/orders/42",
            dynamic_parts={"https://shop.test/orders/42": ["sess_9f3"]},
        )
        pipeline = ResolutionPipeline(login_corpus, oracle)
        first = pipeline.run("order")
        second = pipeline.run("order")
        assert len(first.graph) == len(second.graph) == 2
        assert first.master_node != second.master_node
