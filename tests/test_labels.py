import unittest

from fleet.labels import ALPHABET, LabelAllocator


class TestLabelAllocator(unittest.TestCase):
    def setUp(self):
        self.allocator = LabelAllocator()

    def test_generate_count_and_alphabet(self):
        labels = self.allocator.generate(25)
        self.assertEqual(len(labels), 25)
        for label in labels:
            self.assertEqual(len(label), self.allocator.length)
            self.assertTrue(set(label) <= set(ALPHABET))

    def test_labels_are_distinct_at_scale(self):
        """10k labels in one call never collide"""
        labels = self.allocator.generate(10_000)
        self.assertEqual(len(set(labels)), 10_000)

    def test_excluded_labels_are_never_returned(self):
        first = self.allocator.generate(50)
        second = self.allocator.generate(50, exclude=first)
        self.assertFalse(set(first) & set(second))

    def test_short_labels_rejected(self):
        with self.assertRaises(ValueError):
            LabelAllocator(length=4)

    def test_zero_labels(self):
        self.assertEqual(self.allocator.generate(0), [])


if __name__ == '__main__':
    unittest.main()
