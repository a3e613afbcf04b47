from __future__ import annotations

import os
import sys
from datetime import datetime

# Add repo root so autodoc can find mddmri without installation.
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "..")))

project = "MDdMRIpy"
author = "The MDdMRIpy Development Team"
copyright = f"{datetime.now().year}, {author}"

autodoc_mock_imports = [
    "dipy",
    "numpy",
    "scipy",
    "joblib",
    "tqdm",
    "psutil",
]

extensions = [
    "sphinx.ext.autodoc",
    "sphinx.ext.napoleon",
    "sphinx.ext.viewcode",
]

templates_path = ["_templates"]
exclude_patterns = []

html_theme = "sphinx_rtd_theme"
