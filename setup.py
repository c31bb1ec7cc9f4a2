from setuptools import setup, find_packages
import pathlib

here = pathlib.Path(__file__).parent.resolve()
readme = (here / "README.md").read_text(encoding="utf-8") if (here / "README.md").exists() else "NicheView: multi-view spatial relationship modeling."

setup(
	name="nicheview",
	version="0.3.0",
	description="Multi-view spatial modeling of cell features: intrinsic, juxta and para views with cross-validated view contributions",
	long_description=readme,
	long_description_content_type="text/markdown",
	author="NicheView Contributors",
	license="MIT",
	packages=find_packages(exclude=("tests", "tests.*")),
	python_requires=">=3.9",
	install_requires=[
		"anndata>=0.10",
		"numpy>=1.23",
		"pandas>=1.5",
		"rich>=13",
		"click>=8",
		"pyarrow>=14",
		"pyyaml>=6",
		"scikit-learn>=1.2",
		"scipy>=1.10",
		"joblib>=1.4",
		"statsmodels>=0.14",
	],
	extras_require={
		"test": [
			"pytest>=7",
		],
	},
	entry_points={
		"console_scripts": [
			"nicheview=nicheview.cli:main",
		]
	},
	classifiers=[
		"License :: OSI Approved :: MIT License",
		"Programming Language :: Python :: 3",
		"Programming Language :: Python :: 3 :: Only",
		"Programming Language :: Python :: 3.9",
		"Programming Language :: Python :: 3.10",
		"Programming Language :: Python :: 3.11",
		"Intended Audience :: Science/Research",
		"Topic :: Scientific/Engineering :: Bio-Informatics",
	],
)
