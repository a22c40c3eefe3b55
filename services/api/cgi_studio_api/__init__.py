"""HTTP surface for submitting CGI projects and polling their progress."""
