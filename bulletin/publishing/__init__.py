"""Issue publishing: store an issue and enqueue one delivery task per confirmed subscriber."""
