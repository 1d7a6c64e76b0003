"""Tests for structural extraction: exact pass, fragmented pass, line scan."""

from conftest import BANNER_HTML, FOOTER_TSX, HERO_TSX

from hybridedit import extractor
from hybridedit.config import ExtractionConfig
from hybridedit.extractor import StructuralExtractor, dedupe_nodes
from hybridedit.models import CandidateFile, LocatorStrategy, NodeKind
from hybridedit.utils import tokenize


def _candidate(path, content):
    return CandidateFile(path=path, content=content, strategy=LocatorStrategy.EXACT, file_type="react-typescript")


def _in_order_coverage(term, text):
    words, have = tokenize(term), tokenize(text)
    matched, pos = 0, 0
    for w in words:
        while pos < len(have) and have[pos] != w:
            pos += 1
        if pos < len(have):
            matched += 1
            pos += 1
    return matched / len(words)


# =============================================================================
# Exact pass
# =============================================================================

class TestExactPass:
    """Nodes whose content contains the term."""

    def test_jsx_text_span_and_container(self):
        nodes = StructuralExtractor().extract_file("src/Hero.tsx", HERO_TSX, "Welcome to our site")
        assert len(nodes) == 1
        n = nodes[0]
        assert n.kind is NodeKind.JSX_TEXT
        assert n.content == "Welcome to our site"
        assert (n.start_line, n.end_line) == (6, 6)
        assert (n.start_column, n.end_column) == (41, 60)
        assert n.container == '<h1 className="text-4xl font-bold">Welcome to our site</h1>'
        assert n.container_start_line == 6
        assert n.relevance == 1.0
        assert len(n.context_before) == 4
        assert n.context_before[-1].strip() == '<section className="hero">'
        assert n.context_after[0].strip() == "<p>We build things.</p>"

    def test_case_insensitive(self):
        nodes = StructuralExtractor().extract_file("src/Hero.tsx", HERO_TSX, "welcome TO our site")
        assert [n.content for n in nodes] == ["Welcome to our site"]

    def test_expression_and_attribute_literals(self):
        src = (
            "export const Card = () => (\n"
            '  <div className="Hello world">\n'
            '    <img alt="Hello world" />\n'
            '    <p>{"Hello world"}</p>\n'
            "  </div>\n"
            ");\n"
        )
        nodes = StructuralExtractor().extract_file("src/Card.tsx", src, "Hello world")
        assert [(n.kind, n.start_line) for n in nodes] == [
            (NodeKind.STRING_LITERAL, 3),
            (NodeKind.EXPRESSION_LITERAL, 4),
        ]
        assert all(n.content == "Hello world" for n in nodes)

    def test_imports_and_class_names_ignored(self):
        src = 'import x from "hello-world";\nexport const A = () => <div className="hello world" />;\n'
        assert StructuralExtractor().extract_file("src/A.tsx", src, "hello world") == []

    def test_plain_template_string(self):
        src = "export const title = `Summer sale`;\n"
        nodes = StructuralExtractor().extract_file("src/title.ts", src, "Summer sale")
        assert [(n.kind, n.content) for n in nodes] == [(NodeKind.STRING_LITERAL, "Summer sale")]


# =============================================================================
# Fragmented pass
# =============================================================================

class TestFragmentedPass:
    """Terms split across sibling markup."""

    def test_three_sibling_units(self):
        nodes = StructuralExtractor().extract_file("src/Footer.tsx", FOOTER_TSX, "Contact Us Today")
        assert len(nodes) == 1
        n = nodes[0]
        assert n.kind is NodeKind.FRAGMENTED
        assert n.is_fragmented
        assert n.content == "Contact Us Today"
        assert [(f.content, f.start_line, f.start_column) for f in n.fragments] == [
            ("Contact", 5, 14),
            ("Us", 5, 37),
            ("Today", 5, 53),
        ]
        assert n.container.startswith('<a href="/contact" className="cta">')
        assert n.container.endswith("</a>")
        assert n.container_start_line == 4

    def test_coverage_in_order(self):
        nodes = StructuralExtractor().extract_file("src/Footer.tsx", FOOTER_TSX, "Contact Us Today")
        for n in nodes:
            text = " ".join(f.content for f in n.fragments)
            assert _in_order_coverage("Contact Us Today", text) >= 0.6

    def test_tolerates_one_silent_node(self):
        src = "export const B = () => <p><span>Contact</span><i>-</i><span>Us</span><em>Today</em></p>;\n"
        nodes = StructuralExtractor().extract_file("src/B.tsx", src, "Contact Us Today")
        assert [f.content for f in nodes[0].fragments] == ["Contact", "Us", "Today"]

    def test_insufficient_coverage(self):
        nodes = StructuralExtractor().extract_file("src/Footer.tsx", FOOTER_TSX, "Contact Support Team Right Now")
        assert nodes == []

    def test_lookahead_bound(self):
        src = "export const C = () => <p><b>Contact</b><i>a</i><b>Us</b></p>;\n"
        strict = ExtractionConfig(fragment_coverage=1.0)
        assert len(StructuralExtractor(strict).extract_file("src/C.tsx", src, "Contact Us")) == 1

        short = ExtractionConfig(fragment_lookahead=2, fragment_coverage=1.0)
        assert StructuralExtractor(short).extract_file("src/C.tsx", src, "Contact Us") == []

    def test_exact_hit_suppresses_fragments(self):
        src = "export const D = () => <div><p>Contact Us Today</p><span>Contact</span> <b>Us</b></div>;\n"
        nodes = StructuralExtractor().extract_file("src/D.tsx", src, "Contact Us Today")
        assert [n.kind for n in nodes] == [NodeKind.JSX_TEXT]


# =============================================================================
# Line scan
# =============================================================================

class TestLineScan:
    """Markup files and sources that fail to parse."""

    def test_html_exact(self):
        nodes = StructuralExtractor().extract_file("public/banner.html", BANNER_HTML, "free shipping")
        assert len(nodes) == 1
        n = nodes[0]
        assert n.kind is NodeKind.LINE_MATCH
        assert n.content == "Free shipping"
        assert (n.start_line, n.start_column) == (2, 5)

    def test_whitespace_flexible(self):
        src = "<p>Free\n   shipping</p>\n"
        nodes = StructuralExtractor().extract_file("a.html", src, "Free shipping")
        assert [(n.start_line, n.end_line) for n in nodes] == [(1, 2)]

    def test_fragmented_segments(self):
        src = "<p><b>Big</b> <i>Summer</i> <u>Sale</u></p>\n"
        nodes = StructuralExtractor().extract_file("a.html", src, "Big Summer Sale")
        assert len(nodes) == 1
        assert [f.content for f in nodes[0].fragments] == ["Big", "Summer", "Sale"]

    def test_parse_error_falls_back(self):
        src = "export const X = () => <div>Hello world</div\n"
        nodes = StructuralExtractor().extract_file("src/X.tsx", src, "Hello world")
        assert [(n.kind, n.content) for n in nodes] == [(NodeKind.LINE_MATCH, "Hello world")]

    def test_parser_unavailable_falls_back(self, monkeypatch):
        def no_grammar(language):
            raise RuntimeError(f"cannot load {language}")

        monkeypatch.setattr(extractor, "_parser_for", no_grammar)
        nodes = StructuralExtractor().extract_file("src/Hero.tsx", HERO_TSX, "Welcome to our site")
        assert [(n.kind, n.start_line) for n in nodes] == [(NodeKind.LINE_MATCH, 6)]


# =============================================================================
# Whole-run behaviour
# =============================================================================

class TestExtract:
    def test_idempotent(self):
        candidates = [_candidate("src/Hero.tsx", HERO_TSX), _candidate("src/Footer.tsx", FOOTER_TSX)]
        first = StructuralExtractor().extract(candidates, "Welcome to our site")
        second = StructuralExtractor().extract(candidates, "Welcome to our site")
        assert first.nodes == second.nodes
        assert set(first.sources) == {"src/Hero.tsx", "src/Footer.tsx"}

    def test_dedupe(self):
        nodes = StructuralExtractor().extract_file("src/Hero.tsx", HERO_TSX, "Welcome to our site")
        assert dedupe_nodes(nodes + nodes) == nodes

    def test_dedupe_counted(self):
        candidates = [_candidate("src/Hero.tsx", HERO_TSX)] * 2
        result = StructuralExtractor().extract(candidates, "Welcome to our site")
        assert len(result.nodes) == 1
        assert result.duplicates_removed == 1
