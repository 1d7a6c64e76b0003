"""End-to-end tests: replacement outcomes, service dispatch, config-driven run."""

import json

import pytest

from conftest import (
    HERO_TSX,
    ReadOnlyPaths,
    ScriptedOracle,
    batch_id_of,
    replace_responder,
    routing_responder,
    scope_response,
)

from hybridedit.classifier import extract_terms_from_prompt
from hybridedit.config import HybridEditConfig
from hybridedit.models import EditResult, ModificationRequest, ModificationScope, TextChangeTerms
from hybridedit.pipeline import TextReplaceEngine, build_service, run_from_config
from hybridedit.report import format_summary
from hybridedit.session import InMemorySessionStore
from hybridedit.workspace import InMemoryWorkspace

LIST_TSX = (
    "export const L = () => (\n"
    "  <ul>\n"
    + "".join("    <li>Sign up now</li>\n" for _ in range(10))
    + "  </ul>\n"
    ");\n"
)


def _run(files, prompt, responder=replace_responder, cfg=None):
    ws = InMemoryWorkspace(files)
    engine = TextReplaceEngine(ScriptedOracle(responder), cfg)
    result = engine.run(ws, extract_terms_from_prompt(prompt), prompt)
    return result, ws


def _changed_lines(diff):
    return [l for l in diff.splitlines() if l[:1] in "+-" and not l.startswith(("+++", "---"))]


# =============================================================================
# Replacement outcomes
# =============================================================================

class TestReplacementOutcomes:
    """Exact, split, multi-file and partially failed replacements."""

    def test_exact_text_in_one_element(self, sample_files):
        result, ws = _run(sample_files, "change 'Welcome to our site' to 'Hello there'")
        assert result.success
        assert result.modified_files == ["src/components/Hero.tsx"]
        assert result.total_replacements == 1
        assert len(result.diffs) == 1
        assert _changed_lines(result.diffs[0]) == [
            '-      <h1 className="text-4xl font-bold">Welcome to our site</h1>',
            '+      <h1 className="text-4xl font-bold">Hello there</h1>',
        ]
        assert result.error is None
        assert result.average_confidence == pytest.approx(0.9)
        # untouched files stay byte-identical
        assert ws.read("src/components/Footer.tsx") == sample_files["src/components/Footer.tsx"]

    def test_text_split_across_sibling_tags(self, sample_files):
        result, ws = _run(sample_files, "change 'Contact Us Today' to 'Reach Out Now'")
        assert result.success
        assert result.modified_files == ["src/components/Footer.tsx"]
        assert result.total_replacements == 1
        after = ws.read("src/components/Footer.tsx")
        assert "<span>Reach</span> <strong>Out</strong> <em>Now</em>" in after
        assert after.count("<") == sample_files["src/components/Footer.tsx"].count("<")
        assert "fragment_redistribution=1" in result.strategy_summary

    def test_same_text_in_two_files(self):
        files = {
            "src/Header.tsx": "export const H = () => <button>Get Started</button>;\n",
            "src/Pricing.tsx": 'export const P = () => <a href="/signup">Get Started</a>;\n',
        }
        result, ws = _run(files, "change 'Get Started' to 'Start Free'")
        assert result.success
        assert result.total_replacements == 2
        assert sorted(result.modified_files) == ["src/Header.tsx", "src/Pricing.tsx"]
        assert [b.batch_id for b in result.batches] == ["batch_1"]
        assert "Start Free" in ws.read("src/Header.tsx")
        assert "Start Free" in ws.read("src/Pricing.tsx")

    def test_malformed_batch_keeps_other_edits(self):
        def responder(system, user):
            if batch_id_of(user) == "batch_2":
                return "```json\n{ this is not valid\n```"
            return replace_responder(system, user)

        cfg = HybridEditConfig(proposals={"batch_size": 5})
        result, ws = _run({"src/L.tsx": LIST_TSX}, "change 'Sign up' to 'Join'", responder, cfg)
        assert result.success
        assert [b.success for b in result.batches] == [True, False]
        assert result.batches[1].successful_modifications == 0
        assert result.total_replacements == 5
        assert ws.read("src/L.tsx").count("Join now") == 5

    def test_only_batch_malformed_fails_run(self):
        cfg = HybridEditConfig(proposals={"batch_size": 10})
        files = {"src/L.tsx": LIST_TSX}
        result, ws = _run(files, "change 'Sign up' to 'Join'", lambda s, u: "nope", cfg)
        assert result.success is False
        assert result.batches[0].successful_modifications == 0
        assert result.error.startswith("All proposal batches failed")
        assert ws.read("src/L.tsx") == LIST_TSX

    def test_same_container_lines_each_hit_their_own(self):
        result, ws = _run({"src/L.tsx": LIST_TSX}, "change 'Sign up' to 'Join'")
        assert result.total_replacements == 10
        assert "Sign up" not in ws.read("src/L.tsx")


class TestEngineProperties:
    def test_idempotent_rerun(self, sample_files):
        prompt = "change 'Welcome to our site' to 'Hello there'"
        ws = InMemoryWorkspace(sample_files)
        engine = TextReplaceEngine(ScriptedOracle(replace_responder))
        first = engine.run(ws, extract_terms_from_prompt(prompt), prompt)
        second = engine.run(ws, extract_terms_from_prompt(prompt), prompt)
        assert first.total_replacements == 1
        assert second.total_replacements == 0
        assert second.modified_files == []

    def test_no_matching_file(self, sample_files):
        oracle = ScriptedOracle(replace_responder)
        ws = InMemoryWorkspace(sample_files)
        prompt = "change 'Zebra crossing guide' to 'Lion'"
        result = TextReplaceEngine(oracle).run(ws, extract_terms_from_prompt(prompt), prompt)
        assert result.success is False
        assert result.modified_files == []
        assert result.error
        assert oracle.calls == []
        assert result.files_scanned == 3

    def test_unusable_terms(self, sample_files):
        engine = TextReplaceEngine(ScriptedOracle(replace_responder))
        result = engine.run(InMemoryWorkspace(sample_files), TextChangeTerms("same", "same"), "p")
        assert result.success is False
        assert "terms" in result.error

    def test_no_nodes_extracted(self):
        # the file qualifies on token overlap but no single text unit holds the words
        files = {"src/S.tsx": 'import premium from "premium-handmade-leather";\nexport const S = premium;\n'}
        prompt = "change 'premium handmade leather' to 'fine goods'"
        result, _ = _run(files, prompt)
        assert result.success is False
        assert "no text nodes" in result.error

    def test_contract_shape(self, sample_files):
        result, _ = _run(sample_files, "change 'Welcome to our site' to 'Hello there'")
        contract = result.to_contract()
        for key in ("success", "modifiedFiles", "totalReplacements", "batches", "diffs",
                    "averageConfidence", "processingTimeMs", "error"):
            assert key in contract
        assert contract["batches"][0]["batchId"] == "batch_1"

    def test_progress_messages(self, sample_files):
        messages = []
        engine = TextReplaceEngine(ScriptedOracle(replace_responder), on_progress=messages.append)
        prompt = "change 'Welcome to our site' to 'Hello there'"
        engine.run(InMemoryWorkspace(sample_files), extract_terms_from_prompt(prompt), prompt)
        assert messages[0].startswith("Searching for")
        assert messages[-1].startswith("Completed")

    def test_write_failure_keeps_earlier_files(self):
        files = {
            "src/A.tsx": "export const A = () => <h1>Welcome to our site</h1>;\n",
            "src/B.tsx": "export const B = () => <h2>Welcome to our site</h2>;\n",
        }
        ws = ReadOnlyPaths(files, {"src/B.tsx"})
        store = InMemorySessionStore()
        prompt = "change 'Welcome to our site' to 'Hello there'"
        engine = TextReplaceEngine(ScriptedOracle(replace_responder), session_store=store)
        result = engine.run(ws, extract_terms_from_prompt(prompt), prompt, session_id="s1")

        assert result.success
        assert result.error is None
        assert result.modified_files == ["src/A.tsx"]
        assert result.total_replacements == 1
        assert len(result.diffs) == 1
        assert result.skipped_nodes == 1
        assert "1 files failed to update" in result.strategy_summary
        assert "Hello there" in ws.read("src/A.tsx")
        assert ws.read("src/B.tsx") == files["src/B.tsx"]
        assert [c.path for c in store.changes("s1")] == ["src/A.tsx"]

    def test_only_file_unwritable(self):
        ws = ReadOnlyPaths({"src/A.tsx": HERO_TSX}, {"src/A.tsx"})
        prompt = "change 'Welcome to our site' to 'Hello there'"
        result = TextReplaceEngine(ScriptedOracle(replace_responder)).run(ws, extract_terms_from_prompt(prompt), prompt)
        assert result.success is False
        assert result.error.startswith("Could not update files: src/A.tsx")

    def test_unexpected_error_becomes_result(self, sample_files, monkeypatch):
        engine = TextReplaceEngine(ScriptedOracle(replace_responder))

        def boom(candidates, term):
            raise RuntimeError("grammar missing")

        monkeypatch.setattr(engine.extractor, "extract", boom)
        prompt = "change 'Welcome to our site' to 'Hello there'"
        result = engine.run(InMemoryWorkspace(sample_files), extract_terms_from_prompt(prompt), prompt)
        assert result.success is False
        assert "RuntimeError: grammar missing" in result.error
        assert result.files_scanned == 3

    def test_preview_does_not_call_oracle(self, sample_files):
        oracle = ScriptedOracle()
        preview = TextReplaceEngine(oracle).preview(InMemoryWorkspace(sample_files), "Contact Us Today")
        assert preview.success
        assert preview.candidate_files == {"src/components/Footer.tsx": "key_phrases"}
        assert preview.nodes[0].fragment_count == 3
        assert preview.estimated_changes == 1
        assert oracle.calls == []


# =============================================================================
# Service
# =============================================================================

class TestModificationService:
    """Classify, then dispatch."""

    def test_text_replace_via_oracle_classification(self, sample_files):
        answer = scope_response("TEXT_REPLACE", "Welcome to our site", "Hello there")
        oracle = ScriptedOracle(routing_responder(answer))
        store = InMemorySessionStore()
        service = build_service(HybridEditConfig(), oracle=oracle, session_store=store)
        ws = InMemoryWorkspace(sample_files)

        result = service.handle(ModificationRequest(prompt="make the greeting friendlier"), ws, session_id="s1")
        assert result.success
        assert result.scope == "TEXT_REPLACE"
        assert [c.path for c in store.changes("s1")] == ["src/components/Hero.tsx"]

        service.handle(ModificationRequest(prompt="make the greeting friendlier"), ws, session_id="s1")
        classify_prompts = [u for _, u in oracle.calls if u.startswith("USER REQUEST:")]
        assert "RECENT MODIFICATIONS IN THIS SESSION" in classify_prompts[-1]

    def test_heuristic_fallback_still_edits(self, sample_files):
        oracle = ScriptedOracle(routing_responder("not json at all"))
        service = build_service(HybridEditConfig(), oracle=oracle)
        request = ModificationRequest(prompt="change 'Welcome to our site' to 'Hello there'", files=sample_files)
        result = service.handle(request)
        assert result.success
        assert result.total_replacements == 1

    def test_unregistered_scope(self, sample_files):
        service = build_service(HybridEditConfig(), oracle=ScriptedOracle(responses=[RuntimeError("down")]))
        result = service.handle(ModificationRequest(prompt="create a new Pricing page", files=sample_files))
        assert result.success is False
        assert result.scope == "COMPONENT_ADDITION"
        assert "No handler registered" in result.error

    def test_registered_handler(self, sample_files):
        seen = []

        def handler(request, decision, workspace):
            seen.append(decision.component_name)
            return EditResult(success=True, modified_files=["src/Pricing.tsx"], total_replacements=0)

        service = build_service(HybridEditConfig(), oracle=ScriptedOracle(responses=[RuntimeError("down")]))
        service.register(ModificationScope.COMPONENT_ADDITION, handler)
        result = service.handle(ModificationRequest(prompt="create a new Pricing page", files=sample_files))
        assert result.success
        assert result.scope == "COMPONENT_ADDITION"
        assert seen == ["Pricing"]

    def test_unexpected_error_becomes_result(self, sample_files, monkeypatch):
        service = build_service(HybridEditConfig(), oracle=ScriptedOracle(replace_responder))

        def boom(*args, **kwargs):
            raise KeyError("context")

        monkeypatch.setattr(service.classifier, "classify", boom)
        result = service.handle(ModificationRequest(prompt="anything", files=sample_files))
        assert result.success is False
        assert result.error.startswith("Unexpected error: KeyError")

    def test_handler_crash_keeps_scope(self, sample_files):
        def handler(request, decision, workspace):
            raise ZeroDivisionError("bad handler")

        service = build_service(HybridEditConfig(), oracle=ScriptedOracle(responses=[RuntimeError("down")]))
        service.register(ModificationScope.COMPONENT_ADDITION, handler)
        result = service.handle(ModificationRequest(prompt="create a new Pricing page", files=sample_files))
        assert result.success is False
        assert result.scope == "COMPONENT_ADDITION"
        assert "bad handler" in result.error


# =============================================================================
# Config-driven run and report
# =============================================================================

class TestRunFromConfig:
    def test_writes_files_and_report(self, tmp_path):
        root = tmp_path / "app"
        (root / "src").mkdir(parents=True)
        (root / "src" / "Hero.tsx").write_text(HERO_TSX, encoding="utf-8")
        out = tmp_path / "out"
        cfg = HybridEditConfig(project={"root": str(root), "output_dir": str(out)})

        answer = scope_response("TEXT_REPLACE", "Welcome to our site", "Hello there")
        result = run_from_config(cfg, "reword the hero title", oracle=ScriptedOracle(routing_responder(answer)))

        assert result.success
        assert "Hello there" in (root / "src" / "Hero.tsx").read_text(encoding="utf-8")
        payload = json.loads((out / "result.json").read_text(encoding="utf-8"))
        assert payload["modifiedFiles"] == ["src/Hero.tsx"]
        assert "+" in (out / "changes.diff").read_text(encoding="utf-8")
        assert format_summary(result).startswith("[SUCCESS] scope=TEXT_REPLACE")

    def test_dry_run_leaves_disk_untouched(self, tmp_path):
        root = tmp_path / "app"
        root.mkdir()
        (root / "Hero.tsx").write_text(HERO_TSX, encoding="utf-8")
        cfg = HybridEditConfig(project={"root": str(root), "output_dir": str(tmp_path / "out")})

        answer = scope_response("TEXT_REPLACE", "Welcome to our site", "Hello there")
        result = run_from_config(cfg, "x", dry_run=True, oracle=ScriptedOracle(routing_responder(answer)))
        assert result.total_replacements == 1
        assert (root / "Hero.tsx").read_text(encoding="utf-8") == HERO_TSX
