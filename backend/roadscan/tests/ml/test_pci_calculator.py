import unittest

from roadscan.ml.pavement_analysis.analysis_modules.pci_calculator import (
    calculate_astm_pci,
    calculate_pci,
    determine_severity,
    round_half_up,
)
from roadscan.models.pavement import PixelPercentages, SeverityLevel


class TestPowerLawPCI(unittest.TestCase):

    def test_no_damage_scores_100(self):
        result = calculate_pci({})
        self.assertEqual(result.pci_score, 100.0)
        self.assertEqual(result.pci_rating, "Good")
        self.assertEqual(result.total_deduct_value, 0.0)

    def test_alligator_at_one_percent(self):
        result = calculate_pci({'alligator': 1, 'pothole': 0, 'longitudinal': 0, 'transverse': 0})
        self.assertEqual(result.pci_score, 72.0)
        self.assertEqual(result.pci_rating, "Satisfactory")
        self.assertEqual(result.deduct_breakdown.alligator, 28.0)
        self.assertEqual(result.damage_metrics.defect_count_by_type,
                         {'transverse': 0, 'longitudinal': 0, 'alligator': 1, 'pothole': 0})

    def test_pothole_dominates_sealed_crack(self):
        pothole = calculate_pci({'pothole': 5})
        sealed = calculate_pci({'sealed_crack': 5})
        self.assertEqual(pothole.pci_score, 0.0)
        self.assertGreater(sealed.pci_score, 90.0)
        self.assertGreater(sealed.pci_score - pothole.pci_score, 50.0)

    def test_sealed_deduct_reported_under_transverse(self):
        result = calculate_pci({'sealed': 4})
        # 3.0 * 4^0.5
        self.assertEqual(result.deduct_breakdown.transverse, 6.0)
        self.assertEqual(result.pci_score, 94.0)
        self.assertEqual(result.damage_metrics.damage_percentage, 0.0)

    def test_diminishing_weights(self):
        single = calculate_pci({'alligator': 1})
        combined = calculate_pci({'alligator': 1, 'transverse': 1})
        # 28 + 0.7 * 7.5
        self.assertAlmostEqual(combined.total_deduct_value, 33.25, delta=0.06)
        self.assertLess(combined.pci_score, single.pci_score)

    def test_total_deduct_capped_at_100(self):
        result = calculate_pci({'alligator': 50, 'pothole': 50, 'longitudinal': 50, 'transverse': 50, 'sealed_crack': 50})
        self.assertEqual(result.total_deduct_value, 100.0)
        self.assertEqual(result.pci_score, 0.0)
        self.assertEqual(result.pci_rating, "Failed")

    def test_accepts_model_and_ignores_garbage(self):
        from_model = calculate_pci(PixelPercentages(alligator=1))
        from_strings = calculate_pci({'alligator': '1', 'pothole': 'n/a', 'transverse': -3})
        self.assertEqual(from_model.pci_score, 72.0)
        self.assertEqual(from_strings.pci_score, 72.0)

    def test_verbose_logs_at_info(self):
        with self.assertLogs('roadscan', level='INFO') as captured:
            calculate_pci({'transverse': 2}, verbose=True, segment_id=7)
        self.assertTrue(any("Segment 7" in message for message in captured.output))

    def test_round_half_up(self):
        self.assertEqual(round_half_up(2.25), 2.3)
        self.assertEqual(round_half_up(0.25), 0.3)
        self.assertEqual(round_half_up(72.04), 72.0)


class TestSeverityMapping(unittest.TestCase):

    def test_keywords(self):
        self.assertEqual(determine_severity("minor"), SeverityLevel.LOW)
        self.assertEqual(determine_severity("Moderate"), SeverityLevel.MEDIUM)
        self.assertEqual(determine_severity("SEVERE"), SeverityLevel.HIGH)
        self.assertEqual(determine_severity("High"), SeverityLevel.HIGH)

    def test_nested_variants(self):
        self.assertEqual(determine_severity({'joint_severity': 'high', 'pixel_severity': 'low'}), SeverityLevel.HIGH)
        self.assertEqual(determine_severity({'mm_severity': 'low'}), SeverityLevel.LOW)
        self.assertEqual(determine_severity({'joint_severity_score': 2.4}), SeverityLevel.MEDIUM)

    def test_numeric_scores(self):
        self.assertEqual(determine_severity(0.1), SeverityLevel.LOW)
        self.assertEqual(determine_severity(0.9), SeverityLevel.HIGH)
        self.assertEqual(determine_severity(1.5), SeverityLevel.LOW)
        self.assertEqual(determine_severity("2.5"), SeverityLevel.MEDIUM)
        self.assertEqual(determine_severity(3), SeverityLevel.HIGH)

    def test_default(self):
        self.assertEqual(determine_severity(None), SeverityLevel.MEDIUM)
        self.assertEqual(determine_severity("unclassified", default=SeverityLevel.LOW), SeverityLevel.LOW)


class TestAstmPCI(unittest.TestCase):

    def test_no_distress(self):
        result = calculate_astm_pci([])
        self.assertEqual(result.pci_score, 100.0)
        self.assertEqual(result.pci_rating, "Excellent")

    def test_single_pothole(self):
        result = calculate_astm_pci([{'defect_type': 'pothole', 'severity': 'High', 'density': 1}])
        self.assertEqual(result.pci_score, 88.0)
        self.assertEqual(result.pci_rating, "Excellent")
        self.assertEqual(result.deduct_breakdown.pothole, 12.0)
        self.assertEqual(result.damage_metrics.defect_count_by_type, {'pothole': 1})
        self.assertEqual(result.damage_metrics.severity_distribution, {'pothole': {'High': 1}})

    def test_multiple_distresses_use_correction(self):
        # alligator High 20% -> 54, longitudinal Medium 30% -> 21
        result = calculate_astm_pci([
            {'defect_type': 'Alligator Crack', 'severity': 'severe', 'density': 20},
            {'type': 'longitudinal', 'severity': 'Medium', 'density': 30},
        ])
        # q=2 at TDV 75 -> 57.5, then q=1 at TDV 56 -> 56
        self.assertEqual(result.total_deduct_value, 57.5)
        self.assertEqual(result.pci_score, 42.5)
        self.assertEqual(result.pci_rating, "Poor")

    def test_sealed_cracks_have_no_deduct(self):
        result = calculate_astm_pci([{'defect_type': 'sealed_crack', 'severity': 'High', 'density': 40}])
        self.assertEqual(result.pci_score, 100.0)
        self.assertEqual(result.damage_metrics.defect_count_by_type, {})


if __name__ == '__main__':
    unittest.main()
