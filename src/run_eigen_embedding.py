"""
Driver script for eigen-decomposition embeddings.

Reads configuration from a JSON file, loads a weight matrix, computes the
requested eigenpairs and saves the results and a spectrum plot.

Usage:
    python run_eigen_embedding.py config.json
    python run_eigen_embedding.py --config config.json
    python run_eigen_embedding.py  # Uses default 'config.json' in current directory
"""

import argparse
import json
import os
import sys
import time
from pathlib import Path

import numpy as np
import matplotlib.pyplot as plt
from scipy import sparse

from eigen_embedding import EigenMethod, EmbeddingResult, embed
from embedding_errors import EmbeddingError
from matrix_operations import (
    DenseInverseOperation,
    ImplicitSquareOperation,
    ImplicitSymmetricSquareOperation,
    MatrixOperation,
    ProductOperation,
    SparseInverseOperation,
)

VALID_OPERATIONS = ['product', 'implicit_square', 'implicit_symmetric_square', 'inverse']


def load_config(config_path: str) -> dict:
    """
    Load configuration from a JSON file.

    Parameters
    ----------
    config_path : str
        Path to the JSON configuration file

    Returns
    -------
    dict
        Configuration dictionary
    """
    with open(config_path, 'r') as f:
        config = json.load(f)
    return config


def validate_config(config: dict) -> dict:
    """
    Validate and fill in default values for configuration.

    Parameters
    ----------
    config : dict
        Configuration dictionary

    Returns
    -------
    dict
        Validated configuration with defaults filled in
    """
    defaults = {
        'input': {
            'matrix_file': 'weights.npy',
            'operation': 'product'
        },
        'embedding': {
            'method': 'randomized',
            'target_dimension': 2,
            'skip': 0,
            'random_state': None,
            'require_full_rank': False,
            'disabled_methods': []
        },
        'output': {
            'output_dir': 'results',
            'save_embedding': True,
            'save_figures': True,
            'figure_format': 'png'
        }
    }

    # Merge defaults with provided config
    for section, section_defaults in defaults.items():
        if section not in config:
            config[section] = dict(section_defaults)
        else:
            for key, value in section_defaults.items():
                if key not in config[section]:
                    config[section][key] = value

    # Validate input parameters
    if config['input']['operation'] not in VALID_OPERATIONS:
        raise ValueError(f"operation must be one of {VALID_OPERATIONS}")
    suffix = Path(config['input']['matrix_file']).suffix
    if suffix not in ['.npy', '.npz']:
        raise ValueError("matrix_file must be a .npy or .npz file")

    # Validate embedding parameters
    emb = config['embedding']
    EigenMethod.parse(emb['method'])
    for name in emb['disabled_methods']:
        EigenMethod.parse(name)
    for key in ['target_dimension', 'skip']:
        value = emb[key]
        if isinstance(value, bool) or not isinstance(value, int) or value < 0:
            raise ValueError(f"{key} must be a non-negative integer")
    seed = emb['random_state']
    if seed is not None and (isinstance(seed, bool) or not isinstance(seed, int) or seed < 0):
        raise ValueError("random_state must be null or a non-negative integer")

    # Validate output parameters
    if config['output']['figure_format'] not in ['png', 'pdf', 'svg', 'eps']:
        raise ValueError("figure_format must be 'png', 'pdf', 'svg', or 'eps'")

    return config


def load_weight_matrix(matrix_file: str):
    """
    Load a weight matrix from disk.

    ``.npy`` files hold a dense array, ``.npz`` files a matrix written with
    ``scipy.sparse.save_npz``.
    """
    if Path(matrix_file).suffix == '.npz':
        return sparse.load_npz(matrix_file)
    return np.load(matrix_file)


def build_operation(matrix, operation: str) -> MatrixOperation:
    """
    Wrap a weight matrix in the operation named by the configuration.

    Parameters
    ----------
    matrix : ndarray or scipy.sparse matrix
        Weight matrix.
    operation : str
        One of VALID_OPERATIONS.
    """
    if operation == 'product':
        return ProductOperation(matrix)
    if operation == 'implicit_square':
        return ImplicitSquareOperation(matrix)
    if operation == 'implicit_symmetric_square':
        return ImplicitSymmetricSquareOperation(matrix)
    if operation == 'inverse':
        if sparse.issparse(matrix):
            return SparseInverseOperation(matrix)
        return DenseInverseOperation(matrix)
    raise ValueError(f"operation must be one of {VALID_OPERATIONS}, got '{operation}'")


def run_embedding(config: dict, matrix=None) -> EmbeddingResult:
    """
    Compute the embedding described by a validated configuration.

    Parameters
    ----------
    config : dict
        Configuration dictionary
    matrix : ndarray or scipy.sparse matrix, optional
        Weight matrix. Loaded from ``input.matrix_file`` if None.

    Returns
    -------
    EmbeddingResult
    """
    emb = config['embedding']
    method = EigenMethod.parse(emb['method'])

    if matrix is None:
        print(f"Loading weight matrix from: {config['input']['matrix_file']}")
        matrix = load_weight_matrix(config['input']['matrix_file'])

    operation = build_operation(matrix, config['input']['operation'])
    print(f"  Operation: {operation}")

    options = {}
    if method != EigenMethod.DENSE_DIRECT and emb['random_state'] is not None:
        options['random_state'] = emb['random_state']

    print("=" * 60)
    print(f"Computing {emb['target_dimension']} eigenpairs "
          f"(skip={emb['skip']}, method={method.value})...")
    print("=" * 60)

    start = time.perf_counter()
    result = embed(
        method,
        operation,
        emb['target_dimension'],
        emb['skip'],
        disabled_methods=emb['disabled_methods'],
        **options
    )
    elapsed = time.perf_counter() - start

    print(f"  Eigenvalues: {result.eigenvalues}")
    print(f"  Valid eigenpairs: {result.n_valid}/{result.target_dimension}")
    print(f"  Elapsed: {elapsed:.3f} s")

    if emb['require_full_rank']:
        result.check_rank()
    elif result.is_partial:
        print(f"  Warning: only {result.subspace_rank} of {result.n_requested} "
              f"eigenpairs are valid (rank deficient probe subspace)")

    return result


def save_results(result: EmbeddingResult, config: dict):
    """
    Save eigenvalues to JSON and, if requested, the embedding to NPZ.

    Parameters
    ----------
    result : EmbeddingResult
        Computed embedding
    config : dict
        Configuration dictionary
    """
    output = config['output']
    output_dir = output['output_dir']
    os.makedirs(output_dir, exist_ok=True)

    # NaN marks degenerate slots; JSON has no NaN so they become null
    eigenvalues = [
        float(v) if valid else None
        for v, valid in zip(result.eigenvalues, result.valid_mask)
    ]
    output_results = {
        'method': result.method.value if result.method is not None else None,
        'eigenvalues': eigenvalues,
        'n_valid': result.n_valid,
        'subspace_rank': result.subspace_rank,
        'n_requested': result.n_requested,
        'config': config
    }

    filepath = os.path.join(output_dir, 'results.json')
    with open(filepath, 'w') as f:
        json.dump(output_results, f, indent=2)
    print(f"\nResults saved to: {filepath}")

    if output['save_embedding']:
        filepath = os.path.join(output_dir, 'embedding.npz')
        np.savez_compressed(
            filepath,
            eigenvalues=result.eigenvalues,
            eigenvectors=result.eigenvectors,
            valid_mask=result.valid_mask
        )
        print(f"Embedding saved to: {filepath}")


def plot_spectrum(result: EmbeddingResult, config: dict):
    """
    Plot the computed eigenvalues.

    Parameters
    ----------
    result : EmbeddingResult
        Computed embedding
    config : dict
        Configuration dictionary

    Returns
    -------
    fig : matplotlib.figure.Figure
    """
    output = config['output']

    fig, ax = plt.subplots(figsize=(10, 6))
    indices = np.arange(1, result.target_dimension + 1)
    valid = result.valid_mask

    ax.plot(indices[valid], result.eigenvalues[valid], 'bo-', linewidth=2, markersize=8)
    if not np.all(valid):
        for idx in indices[~valid]:
            ax.axvline(x=idx, color='r', linestyle='--', alpha=0.7)
    ax.set_xlabel('Eigenpair Index')
    ax.set_ylabel('Eigenvalue')
    ax.set_title(f'Embedding Spectrum ({config["embedding"]["method"]})')
    ax.grid(True, alpha=0.3)

    if output['save_figures']:
        os.makedirs(output['output_dir'], exist_ok=True)
        filepath = os.path.join(output['output_dir'], f"spectrum.{output['figure_format']}")
        fig.savefig(filepath, dpi=150, bbox_inches='tight')
        print(f"  Saved: {filepath}")

    return fig


def main():
    """Main entry point for the driver script."""
    parser = argparse.ArgumentParser(
        description='Compute an eigen-decomposition embedding from JSON configuration.',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Example config.json:
{
    "input": {
        "matrix_file": "weights.npz",
        "operation": "inverse"
    },
    "embedding": {
        "method": "sparse_iterative",
        "target_dimension": 2,
        "skip": 1,
        "random_state": 0,
        "require_full_rank": true,
        "disabled_methods": []
    },
    "output": {
        "output_dir": "results",
        "save_embedding": true,
        "save_figures": true,
        "figure_format": "png"
    }
}
        """
    )
    parser.add_argument(
        'config',
        nargs='?',
        default=None,
        help='Path to JSON configuration file (default: config.json)'
    )
    parser.add_argument(
        '--config',
        dest='config_option',
        default=None,
        help='Path to JSON configuration file'
    )
    parser.add_argument(
        '--no-plots',
        action='store_true',
        help='Skip plot generation'
    )
    parser.add_argument(
        '--no-save',
        action='store_true',
        help='Do not save results to file'
    )

    args = parser.parse_args()
    config_path = args.config_option or args.config or 'config.json'

    # Load and validate configuration
    print(f"Loading configuration from: {config_path}")
    try:
        config = load_config(config_path)
        config = validate_config(config)
    except FileNotFoundError:
        print(f"Error: Configuration file '{config_path}' not found.")
        sys.exit(1)
    except json.JSONDecodeError as e:
        print(f"Error: Invalid JSON in configuration file: {e}")
        sys.exit(1)
    except ValueError as e:
        print(f"Error: Invalid configuration: {e}")
        sys.exit(1)

    print("Configuration loaded successfully.\n")

    try:
        result = run_embedding(config)
    except FileNotFoundError:
        print(f"Error: Matrix file '{config['input']['matrix_file']}' not found.")
        sys.exit(1)
    except EmbeddingError as e:
        print(f"Error: {type(e).__name__}: {e}")
        sys.exit(1)

    if not args.no_save:
        save_results(result, config)

    if not args.no_plots:
        fig = plot_spectrum(result, config)
        if config['output']['save_figures']:
            plt.close(fig)
        else:
            plt.show()

    print()
    print("=" * 60)
    print("Embedding complete!")
    print("=" * 60)


if __name__ == '__main__':
    main()
