"""CBT portal backend — timed multiple-choice exams with supervised sittings."""
