"""Tests for the shared condition evaluator used by response mapping."""
from utils.conditions import evaluate_condition, evaluate_conditions, get_nested_value, set_nested_value


class TestGetNestedValue:
    def test_flat_key(self):
        assert get_nested_value({"name": "Alice"}, "name") == "Alice"

    def test_nested_key(self):
        data = {"order": {"status": "shipped", "items": 3}}
        assert get_nested_value(data, "order.status") == "shipped"
        assert get_nested_value(data, "order.items") == 3

    def test_missing_key(self):
        assert get_nested_value({"a": 1}, "b") is None

    def test_missing_nested_key(self):
        assert get_nested_value({"a": {"b": 1}}, "a.c") is None

    def test_list_index(self):
        data = {"orders": [{"sku": "A1"}, {"sku": "B2"}]}
        assert get_nested_value(data, "orders[1].sku") == "B2"
        assert get_nested_value(data, "orders[5].sku") is None

    def test_root_and_dollar_prefix(self):
        data = {"a": {"b": 2}}
        assert get_nested_value(data, ".") is data
        assert get_nested_value(data, "$.a.b") == 2


class TestSetNestedValue:
    def test_creates_intermediate_dicts(self):
        data = {}
        set_nested_value(data, "customer.address.city", "Pune")
        assert data == {"customer": {"address": {"city": "Pune"}}}


class TestEvaluateCondition:
    def test_equals(self):
        cond = {"field": "status", "operator": "equals", "value": "active"}
        assert evaluate_condition(cond, {"status": "active"})
        assert not evaluate_condition(cond, {"status": "inactive"})

    def test_not_equals(self):
        cond = {"field": "status", "operator": "notEquals", "value": "closed"}
        assert evaluate_condition(cond, {"status": "active"})
        assert not evaluate_condition(cond, {"status": "closed"})

    def test_greater_than(self):
        cond = {"field": "amount", "operator": "greaterThan", "value": 100}
        assert evaluate_condition(cond, {"amount": 200})
        assert not evaluate_condition(cond, {"amount": 50})
        assert not evaluate_condition(cond, {"amount": 100})

    def test_short_aliases(self):
        assert evaluate_condition({"field": "n", "operator": "gte", "value": 5}, {"n": 5})
        assert evaluate_condition({"field": "n", "operator": "lt", "value": 5}, {"n": 4})

    def test_in(self):
        cond = {"field": "tier", "operator": "in", "value": ["gold", "platinum"]}
        assert evaluate_condition(cond, {"tier": "gold"})
        assert not evaluate_condition(cond, {"tier": "silver"})

    def test_contains(self):
        cond = {"field": "name", "operator": "contains", "value": "Kumar"}
        assert evaluate_condition(cond, {"name": "Rajesh Kumar"})
        assert not evaluate_condition(cond, {"name": "Priya Sharma"})

    def test_matches(self):
        cond = {"field": "email", "operator": "matches", "value": r"@.*\.com$"}
        assert evaluate_condition(cond, {"email": "test@example.com"})
        assert not evaluate_condition(cond, {"email": "test@example.org"})

    def test_exists(self):
        cond = {"field": "phone", "operator": "exists"}
        assert evaluate_condition(cond, {"phone": "+91123"})
        assert not evaluate_condition(cond, {"email": "a@b.com"})

    def test_not_exists(self):
        cond = {"field": "phone", "operator": "notExists"}
        assert evaluate_condition(cond, {"email": "a@b.com"})
        assert not evaluate_condition(cond, {"phone": "+91123"})

    def test_type_checks(self):
        assert evaluate_condition({"field": "x", "operator": "isArray"}, {"x": []})
        assert evaluate_condition({"field": "x", "operator": "isNumber"}, {"x": 3})
        assert not evaluate_condition({"field": "x", "operator": "isNumber"}, {"x": True})

    def test_has_length(self):
        assert evaluate_condition({"field": "x", "operator": "hasLength", "value": 2}, {"x": [1, 2]})

    def test_numeric_string(self):
        cond = {"field": "amount", "operator": "gt", "value": 100}
        assert evaluate_condition(cond, {"amount": "200"})

    def test_default_operator_is_equals(self):
        assert evaluate_condition({"field": "x", "value": 1}, {"x": 1})

    def test_invalid_operator(self):
        assert not evaluate_condition({"field": "x", "operator": "invalid_op", "value": 1}, {"x": 1})

    def test_invalid_regex_returns_false(self):
        assert not evaluate_condition({"field": "x", "operator": "matches", "value": "("}, {"x": "a"})

    def test_non_numeric_returns_false(self):
        cond = {"field": "x", "operator": "gt", "value": 10}
        assert not evaluate_condition(cond, {"x": "not_a_number"})

    def test_non_dict_condition(self):
        assert not evaluate_condition("x > 1", {"x": 2})


class TestEvaluateConditions:
    def test_empty_conditions(self):
        assert evaluate_conditions([], {"anything": True})

    def test_all_pass(self):
        conditions = [
            {"field": "amount", "operator": "gt", "value": 100},
            {"field": "status", "operator": "eq", "value": "overdue"},
        ]
        assert evaluate_conditions(conditions, {"amount": 200, "status": "overdue"})

    def test_one_fails(self):
        conditions = [
            {"field": "amount", "operator": "gt", "value": 100},
            {"field": "status", "operator": "eq", "value": "overdue"},
        ]
        assert not evaluate_conditions(conditions, {"amount": 200, "status": "paid"})
