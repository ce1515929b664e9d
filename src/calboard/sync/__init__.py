"""Change detection: snapshot store, classifier, watermark and sync engine."""
