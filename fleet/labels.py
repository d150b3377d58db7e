# fleet/labels.py
import logging
import secrets
import string

log = logging.getLogger("fleet.labels")

ALPHABET = string.digits + string.ascii_lowercase
LABEL_LENGTH = 8


class LabelAllocator:
    """
    Draws short random base-36 tokens that tie an instance to the runner it will
    register. Labels only mean something for the lifetime of one run.
    """

    def __init__(self, length: int = LABEL_LENGTH):
        if length < 5:
            raise ValueError("labels need at least 5 characters")
        self.length = length

    def _draw(self):
        return "".join(secrets.choice(ALPHABET) for _ in range(self.length))

    def generate(self, n: int, exclude=None) -> list[str]:
        """
        Return n pairwise distinct labels, none of which appear in `exclude`.
        Pass the run's already-issued labels as `exclude` so a retry never reuses one.
        """
        taken = set(exclude or ())
        labels = []
        while len(labels) < n:
            label = self._draw()
            if label in taken:
                continue
            taken.add(label)
            labels.append(label)
        log.info("Generated %s runner labels", n)
        return labels
