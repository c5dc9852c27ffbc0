"""
Tests for alert routing rules.
"""

from incident_engine.core.models import Alert, AlertSeverity, AlertStatus
from incident_engine.core.routing import AlertRouter, RoutingRule

from conftest import firing


def alert(**extra):
    return Alert.from_dict(firing(**extra))


class TestRoutingRule:

    def test_all_conditions_must_match(self):
        rule = RoutingRule.from_dict({
            'name': 'db-critical',
            'conditions': {
                'labels': {'team': 'db'},
                'severity': ['critical', 'high'],
                'title_contains': 'cpu',
            },
        })

        assert rule.matches(alert(labels={'team': 'db'}))
        assert not rule.matches(alert(labels={'team': 'web'}))
        assert not rule.matches(alert(labels={'team': 'db'}, severity='low'))
        assert not rule.matches(alert(labels={'team': 'db'}, title='Disk full'))

    def test_description_pattern(self):
        rule = RoutingRule(name='maintenance', description_matches=r'^\[maint\]')

        assert rule.matches(alert(description='[maint] planned reboot'))
        assert not rule.matches(alert(description='unplanned reboot'))

    def test_invalid_pattern_never_matches(self):
        rule = RoutingRule(name='broken', description_matches='([')

        assert not rule.matches(alert(description='anything'))

    def test_single_severity_condition(self):
        rule = RoutingRule.from_dict({'name': 'info', 'conditions': {'severity': 'info'}})

        assert rule.severities == [AlertSeverity.INFO]


class TestAlertRouter:

    def test_first_matching_rule_by_priority_wins(self):
        router = AlertRouter.from_config([
            {'name': 'low', 'priority': 1, 'conditions': {'source': 'prometheus'},
             'actions': {'route_to_service': 'generic'}},
            {'name': 'high', 'priority': 10, 'conditions': {'source': 'prometheus'},
             'actions': {'route_to_service': 'platform', 'set_severity': 'critical',
                         'add_tags': ['paging']}},
        ])

        routed, suppressed = router.route(alert(source='prometheus'))

        assert not suppressed
        assert routed.service_id == 'platform'
        assert routed.severity is AlertSeverity.CRITICAL
        assert routed.labels['tag:paging'] == 'true'
        assert router.match_counts == {'high': 1}

    def test_disabled_rule_is_skipped(self):
        router = AlertRouter([RoutingRule(name='off', enabled=False, suppress=True)])

        _, suppressed = router.route(alert())

        assert not suppressed

    def test_suppressing_rule(self):
        router = AlertRouter([RoutingRule(name='noise', source='canary', suppress=True)])

        routed, suppressed = router.route(alert(source='canary'))

        assert suppressed
        assert routed.status is AlertStatus.SUPPRESSED

    def test_no_rules_leaves_alert_unchanged(self):
        original = alert()
        routed, suppressed = AlertRouter().route(original)

        assert routed is original
        assert routed.service_id == 'svc1'
        assert not suppressed
