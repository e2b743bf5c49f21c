"""Tests for the structural parser."""

import textwrap

from auditpipe.ast_parser import ASTParser

PYTHON_SOURCE = textwrap.dedent("""\
    import os
    from .models import User

    class Service:
        def handle(self, request, user):
            if request:
                for item in user:
                    if item:
                        return item
            return None

    def helper(a, b=1, *args, **kwargs):
        return a
    """)


def test_python_nodes():
    """Classes, methods and functions with their metrics."""
    parsed = ASTParser().parse_content(PYTHON_SOURCE, "python", "svc.py")
    assert parsed.parse_error is None
    assert parsed.line_count == 13
    assert [(n.node_type, n.qualified_name) for n in parsed.nodes] == [
        ("class", "Service"),
        ("method", "Service.handle"),
        ("function", "helper"),
    ]

    handle = parsed.nodes[1]
    assert (handle.line_start, handle.line_end) == (5, 10)
    assert handle.param_count == 2
    assert handle.complexity == 4
    assert handle.max_nesting == 3

    helper = parsed.nodes[2]
    assert helper.param_count == 4
    assert helper.complexity == 1


def test_python_imports():
    parsed = ASTParser().parse_content(PYTHON_SOURCE, "python")
    assert [(i.module, i.line) for i in parsed.imports] == [("os", 1), (".models", 2)]
    assert parsed.imports[1].names == ("User",)
    assert parsed.imports[1].relative


def test_python_boolean_operators_add_complexity():
    parsed = ASTParser().parse_content("def f(a, b, c):\n    return a and b or c\n", "python")
    assert parsed.functions[0].complexity == 3


def test_nested_function_is_not_a_method():
    content = textwrap.dedent("""\
        class A:
            def outer(self):
                def inner(x):
                    return x
                return inner
        """)
    parsed = ASTParser().parse_content(content, "python")
    kinds = {n.name: n.node_type for n in parsed.nodes}
    assert kinds == {"A": "class", "outer": "method", "inner": "function"}


def test_python_syntax_error_is_recorded():
    parsed = ASTParser().parse_content("def broken(:\n", "python", "bad.py")
    assert parsed.parse_error.startswith("SyntaxError")
    assert parsed.nodes == []


def test_identical_files_do_not_share_nodes():
    parser = ASTParser()
    first = parser.parse_content(PYTHON_SOURCE, "python", "a.py")
    second = parser.parse_content(PYTHON_SOURCE, "python", "b.py")
    first.nodes[0].name = "Changed"
    assert second.nodes[0].name == "Service"


JS_SOURCE = textwrap.dedent("""\
    import { a } from './a';
    const _ = require('lodash');

    // function fake(x) { if (x) {} }
    function doWork(x, y) {
      if (x && y) {
        return "{";
      }
      return 0;
    }

    class Greeter {
      greet(name) {
        return name;
      }
    }

    const add = (p, q) => p + q;
    """)


def test_javascript_functions_and_classes():
    parsed = ASTParser().parse_content(JS_SOURCE, "javascript", "app.js")
    assert [(n.node_type, n.qualified_name) for n in parsed.nodes] == [
        ("function", "doWork"),
        ("class", "Greeter"),
        ("method", "Greeter.greet"),
        ("function", "add"),
    ]
    do_work = parsed.nodes[0]
    assert (do_work.line_start, do_work.line_end) == (5, 10)
    assert do_work.complexity == 3
    assert do_work.param_count == 2
    assert do_work.max_nesting == 1


def test_javascript_imports():
    parsed = ASTParser().parse_content(JS_SOURCE, "javascript")
    assert [(i.module, i.line) for i in parsed.imports] == [("./a", 1), ("lodash", 2)]


def test_go_receiver_functions_are_methods():
    content = textwrap.dedent("""\
        package main

        import (
            "fmt"
            str "strings"
        )

        func (s *Server) Start(port int) error {
            fmt.Println(port)
            return nil
        }
        """)
    parsed = ASTParser().parse_content(content, "go")
    assert [(n.node_type, n.name) for n in parsed.functions] == [("method", "Start")]
    assert [i.module for i in parsed.imports] == ["fmt", "strings"]


def test_unsupported_language_yields_empty_tree():
    parser = ASTParser()
    parsed = parser.parse_content("SELECT 1;\n", "sql")
    assert not parser.supports_language("sql")
    assert parsed.nodes == []
    assert parsed.line_count == 1
