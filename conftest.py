# Marks the repository root so pytest puts the top-level modules on sys.path.
