"""Tests for app.pipeline.route_resolver: URL patterns to handler files."""

from conftest import write_file

from app.pipeline.route_resolver import (
    RouteResolver,
    controller_base_name,
    extract_keywords,
    normalize_pattern,
    resolve_controller_path,
    resolve_view_path,
    route_match_score,
)


class TestHelpers:
    def test_normalize_strips_verb_and_slashes(self):
        assert normalize_pattern("GET /Orders/") == "orders"
        assert normalize_pattern("  delete /api/orders/5 ") == "api/orders/5"

    def test_match_score_ladder(self):
        assert route_match_score("orders", "orders") == 1.0
        assert route_match_score("orders", "orders/{order}") == 0.9
        assert route_match_score("orders/export", "orders") == 0.8
        assert route_match_score("orders", "api/orders") == 0.6

    def test_match_score_wildcard_segments(self):
        assert route_match_score("users/5/edit", "users/{user}/edit") == 0.5

    def test_controller_path(self):
        assert resolve_controller_path("App\\Http\\Controllers\\OrderController") == (
            "app/Http/Controllers/OrderController.php"
        )
        assert resolve_controller_path("OrderController") == "app/Http/Controllers/OrderController.php"

    def test_controller_base_name(self):
        assert controller_base_name("OrderController") == "Order"
        assert controller_base_name("Api\\OrderController") == "Order"
        assert controller_base_name("ApiOrderController") == "Order"
        assert controller_base_name("OrderHandler") is None

    def test_view_path(self):
        assert resolve_view_path("pages.about") == "resources/views/pages/about.blade.php"

    def test_keywords_drop_stop_words(self):
        assert extract_keywords("Show the orders page for admin") == ["show", "orders", "admin"]


class TestResolver:
    def test_find_handler_exact(self, code_index, repo_path):
        handler = RouteResolver(code_index.routes, repo_path).find_handler("GET /orders")
        assert handler is not None
        assert handler.action == "index"
        assert handler.file == "app/Http/Controllers/OrderController.php"

    def test_find_handler_view_route(self, code_index, repo_path):
        assert RouteResolver(code_index.routes, repo_path).find_handler("/about") is None

    def test_stack_for_view_route(self, code_index, repo_path):
        stack = RouteResolver(code_index.routes, repo_path).get_route_stack("/about")
        assert stack.controller is None
        assert stack.route_file == "routes/web.php"
        assert stack.view == "resources/views/pages/about.blade.php"

    def test_stack_only_lists_existing_files(self, code_index, repo_path):
        write_file(repo_path, "app/Http/Controllers/OrderController.php", "<?php")
        write_file(repo_path, "app/Http/Controllers/OrderExportController.php", "<?php")
        write_file(repo_path, "app/Http/Requests/OrderRequest.php", "<?php")
        write_file(repo_path, "app/Models/Order.php", "<?php")
        write_file(repo_path, "resources/js/Pages/Order/Index.vue", "<template/>")

        stack = RouteResolver(code_index.routes, repo_path).get_route_stack("orders")
        assert stack.controller == "app/Http/Controllers/OrderController.php"
        assert stack.request == "app/Http/Requests/OrderRequest.php"
        assert stack.model == "app/Models/Order.php"
        assert stack.page == "resources/js/Pages/Order/Index.vue"
        assert stack.resource is None
        assert stack.view is None
        assert stack.related == ["app/Http/Controllers/OrderExportController.php"]
        assert stack.files()[0] == stack.controller

    def test_match_description_by_method(self, code_index, repo_path):
        matches = RouteResolver(code_index.routes, repo_path).match_description_to_routes("submit payment")
        assert len(matches) == 1
        assert matches[0].route.uri == "api/orders"
        assert matches[0].score == 0.2

    def test_match_description_caps_score(self, code_index, repo_path):
        matches = RouteResolver(code_index.routes, repo_path).match_description_to_routes("create order")
        assert matches
        assert all(m.score <= 1.0 for m in matches)

    def test_routes_by_domain(self, code_index, repo_path):
        groups = RouteResolver(code_index.routes, repo_path).routes_by_domain()
        assert len(groups["orders"]) == 2
        assert len(groups["api"]) == 1
        assert len(groups["about"]) == 1
