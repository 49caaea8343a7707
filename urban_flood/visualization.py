"""
Visualization Module for Urban Flood Susceptibility Mapping
============================================================

Creates report figures and maps:
- Feature importance / weight charts
- Confusion matrices
- Susceptibility map and histogram
- Hotspot maps per method
- Risk-zone coverage comparison
- Animated threshold slices (GIF)
"""

from pathlib import Path
from typing import Dict, List, Mapping, Optional, Sequence, Union

import numpy as np
import pandas as pd
import matplotlib
matplotlib.use("Agg")
import matplotlib.pyplot as plt
import matplotlib.patches as mpatches
from matplotlib.animation import FuncAnimation, PillowWriter
from matplotlib.colors import LinearSegmentedColormap, ListedColormap
import seaborn as sns

from .postprocessing import HotspotResult
from .susceptibility import SusceptibilitySurface
from .utils import ensure_dir, get_logger, timer

logger = get_logger(__name__)

# Set style
plt.style.use('seaborn-v0_8-whitegrid')
sns.set_palette("husl")

SUSCEPTIBILITY_COLORS = ["#22dd0e", "#f9fe31", "#d70c0c"]


class Visualizer:
    """
    Class for creating visualizations of a pipeline run.

    Attributes
    ----------
    output_dir : Path
        Directory for saving figures
    dpi : int
        Figure resolution
    format : str
        Output format (png, pdf, svg)

    Example
    -------
    >>> viz = Visualizer("outputs/figures")
    >>> viz.plot_feature_importance(model.feature_importance)
    >>> viz.plot_susceptibility_map(surface)
    """

    def __init__(
        self,
        output_dir: Union[str, Path] = "outputs/figures",
        dpi: int = 150,
        format: str = "png",
        colormap: Sequence[str] = SUSCEPTIBILITY_COLORS
    ):
        """
        Initialize the Visualizer.

        Parameters
        ----------
        output_dir : str or Path
            Output directory for figures
        dpi : int
            Figure resolution (dots per inch)
        format : str
            Output format
        colormap : sequence of str
            Low-to-high colours of the susceptibility ramp
        """
        self.output_dir = ensure_dir(output_dir)
        self.dpi = dpi
        self.format = format

        self.colors = {
            'primary': '#2E86AB',
            'secondary': '#A23B72',
            'flood': '#d70c0c',
            'urban': '#bdbdbd',
            'neutral': '#666666'
        }
        self.susceptibility_cmap = LinearSegmentedColormap.from_list("susceptibility", list(colormap))

        logger.info(f"Visualizer initialized: {self.output_dir}")

    def _save_figure(self, fig: plt.Figure, filename: str) -> Path:
        """Save figure to output directory."""
        filepath = self.output_dir / f"{filename}.{self.format}"
        fig.savefig(filepath, dpi=self.dpi, bbox_inches='tight', facecolor='white')
        plt.close(fig)
        logger.info(f"  Saved: {filepath.name}")
        return filepath

    # =========================================================================
    # FEATURE IMPORTANCE
    # =========================================================================

    @timer
    def plot_feature_importance(
        self,
        importance_df: pd.DataFrame,
        title: str = "Random Forest Feature Importance"
    ) -> Path:
        """
        Plot feature importance as horizontal bar chart.

        Parameters
        ----------
        importance_df : pd.DataFrame
            'feature' column plus 'importance' or 'weight'
        title : str
            Plot title

        Returns
        -------
        Path
            Path to saved figure
        """
        logger.info("Plotting feature importance...")

        value_column = 'importance' if 'importance' in importance_df.columns else 'weight'
        df = importance_df.sort_values(value_column, ascending=True)
        values = df[value_column] / df[value_column].sum() * 100

        fig, ax = plt.subplots(figsize=(10, 6))
        colors = plt.cm.RdYlGn_r(np.linspace(0.2, 0.8, len(df)))
        bars = ax.barh(df['feature'], values, color=colors, edgecolor='white')

        for bar, val in zip(bars, values):
            ax.text(bar.get_width() + 0.5, bar.get_y() + bar.get_height()/2,
                    f'{val:.1f}%', va='center', fontsize=10)

        ax.set_xlabel('Importance (%)', fontsize=12)
        ax.set_title(title, fontsize=14, fontweight='bold')
        ax.set_xlim(0, max(values.max(), 1.0) * 1.15)
        ax.spines['top'].set_visible(False)
        ax.spines['right'].set_visible(False)

        plt.tight_layout()

        return self._save_figure(fig, "feature_importance")

    # =========================================================================
    # CONFUSION MATRIX
    # =========================================================================

    @timer
    def plot_confusion_matrix(
        self,
        cm: np.ndarray,
        classes: List[str] = ['No flood', 'Flood'],
        title: str = "Confusion Matrix",
        filename: str = "confusion_matrix"
    ) -> Path:
        """
        Plot a 2x2 confusion matrix as heatmap.

        Parameters
        ----------
        cm : np.ndarray
            Confusion matrix (rows = true label)
        classes : list
            Class names
        title : str
            Plot title
        filename : str
            Output file name without extension

        Returns
        -------
        Path
            Path to saved figure
        """
        logger.info(f"Plotting {title.lower()}...")
        cm = np.asarray(cm, dtype=int)

        fig, ax = plt.subplots(figsize=(8, 6))
        sns.heatmap(cm, annot=True, fmt='d', cmap='Blues',
                    xticklabels=classes, yticklabels=classes,
                    annot_kws={'size': 16}, ax=ax)

        ax.set_xlabel('Predicted Label', fontsize=12)
        ax.set_ylabel('True Label', fontsize=12)
        ax.set_title(title, fontsize=14, fontweight='bold')

        total = cm.sum()
        if total:
            for i in range(cm.shape[0]):
                for j in range(cm.shape[1]):
                    ax.text(j + 0.5, i + 0.7, f'({cm[i, j] / total * 100:.1f}%)',
                            ha='center', va='center', fontsize=10, color='gray')

        plt.tight_layout()

        return self._save_figure(fig, filename)

    # =========================================================================
    # SUSCEPTIBILITY MAP
    # =========================================================================

    @timer
    def plot_susceptibility_map(
        self,
        surface: SusceptibilitySurface,
        title: str = "Urban Flood Susceptibility"
    ) -> Path:
        """
        Plot the continuous susceptibility surface.

        Returns
        -------
        Path
            Path to saved figure
        """
        logger.info("Plotting susceptibility map...")

        fig, ax = plt.subplots(figsize=(12, 10))
        im = ax.imshow(surface.data, cmap=self.susceptibility_cmap, vmin=0, vmax=1,
                       extent=self._extent(surface.layer.grid))
        cbar = plt.colorbar(im, ax=ax, shrink=0.8)
        cbar.set_label('Susceptibility', fontsize=11)

        ax.set_title(title, fontsize=14, fontweight='bold')
        ax.set_xlabel('Easting (m)', fontsize=11)
        ax.set_ylabel('Northing (m)', fontsize=11)
        self._north_arrow(ax)

        plt.tight_layout()

        return self._save_figure(fig, "susceptibility_map")

    @timer
    def plot_histogram(
        self,
        surface: SusceptibilitySurface,
        bins: int = 50,
        title: str = "Susceptibility Distribution"
    ) -> Path:
        """Histogram of the surface with its mean and median."""
        logger.info("Plotting susceptibility histogram...")
        values = surface.data.compressed()
        stats = surface.describe()

        fig, ax = plt.subplots(figsize=(10, 6))
        sns.histplot(values, bins=bins, binrange=(0, 1), color=self.colors['primary'], ax=ax)
        if stats['count']:
            ax.axvline(stats['mean'], color=self.colors['flood'], linestyle='--',
                       label=f"Mean = {stats['mean']:.3f}")
            ax.axvline(stats['median'], color=self.colors['neutral'], linestyle=':',
                       label=f"Median = {stats['median']:.3f}")
            ax.legend(loc='upper right')

        ax.set_xlabel('Susceptibility', fontsize=12)
        ax.set_ylabel('Pixels', fontsize=12)
        ax.set_title(title, fontsize=14, fontweight='bold')

        plt.tight_layout()

        return self._save_figure(fig, "susceptibility_histogram")

    # =========================================================================
    # HOTSPOTS
    # =========================================================================

    @timer
    def plot_hotspots(
        self,
        results: Mapping[str, HotspotResult],
        urban: Optional[np.ndarray] = None,
        title: str = "Flood Hotspots by Method"
    ) -> Path:
        """
        One panel per method: urban area in grey, hotspots in red.

        Parameters
        ----------
        results : dict
            method -> HotspotResult
        urban : np.ndarray, optional
            Urban mask drawn as background
        """
        logger.info("Plotting hotspots...")
        n = max(len(results), 1)
        ncols = min(n, 3)
        nrows = int(np.ceil(n / ncols))

        fig, axes = plt.subplots(nrows, ncols, figsize=(5 * ncols, 5 * nrows), squeeze=False)
        cmap = ListedColormap(['white', self.colors['urban'], self.colors['flood']])

        for ax, (method, result) in zip(axes.flat, results.items()):
            canvas = np.zeros(result.labels.shape, dtype=np.uint8)
            if urban is not None:
                canvas[np.asarray(urban, dtype=bool)] = 1
            canvas[result.labels > 0] = 2

            ax.imshow(canvas, cmap=cmap, vmin=0, vmax=2, interpolation='nearest',
                      extent=self._extent(result.raster.grid))
            ax.set_title(f"{method}: {len(result.hotspots)} hotspots, "
                         f"{result.total_area_m2 / 1e4:.1f} ha", fontsize=11)
            ax.set_xticks([])
            ax.set_yticks([])

        for ax in list(axes.flat)[len(results):]:
            ax.axis('off')

        patches = [mpatches.Patch(color=self.colors['urban'], label='Urban'),
                   mpatches.Patch(color=self.colors['flood'], label='Hotspot')]
        fig.legend(handles=patches, loc='lower center', ncol=2, fontsize=10)
        fig.suptitle(title, fontsize=14, fontweight='bold')

        return self._save_figure(fig, "hotspots")

    @timer
    def plot_coverage(
        self,
        coverage: pd.DataFrame,
        title: str = "Risk-Zone Coverage by Method"
    ) -> Path:
        """Bar chart of the share of risk-zone area flagged by each method."""
        logger.info("Plotting risk-zone coverage...")

        fig, ax = plt.subplots(figsize=(10, 6))
        bars = ax.bar(coverage['method'], coverage['coverage_pct'].fillna(0),
                      color=self.colors['primary'], edgecolor='white')
        for bar, val in zip(bars, coverage['coverage_pct'].fillna(0)):
            ax.text(bar.get_x() + bar.get_width()/2, bar.get_height() + 1,
                    f'{val:.1f}%', ha='center', va='bottom', fontsize=10)

        ax.set_ylabel('Risk-zone area classified as flood (%)', fontsize=12)
        ax.set_title(title, fontsize=14, fontweight='bold')
        ax.set_ylim(0, 110)
        ax.yaxis.grid(True, alpha=0.3)
        ax.set_axisbelow(True)

        plt.tight_layout()

        return self._save_figure(fig, "coverage")

    # =========================================================================
    # THRESHOLD SLICES
    # =========================================================================

    @timer
    def animate_slices(
        self,
        surface: SusceptibilitySurface,
        levels: Sequence[int],
        fps: int = 1
    ) -> Path:
        """
        GIF of binary slices ``surface >= level / 100`` for each level.

        Parameters
        ----------
        surface : SusceptibilitySurface
            Continuous surface
        levels : sequence of int
            Percent levels, one frame each
        fps : int
            Frames per second

        Returns
        -------
        Path
            Path to saved GIF
        """
        logger.info(f"Animating {len(levels)} threshold slices...")
        slices = surface.threshold_slices(levels)
        extent = self._extent(surface.layer.grid)
        cmap = ListedColormap(['#f0f0f0', self.colors['flood']])

        fig, ax = plt.subplots(figsize=(8, 8))
        image = ax.imshow(slices[0].data, cmap=cmap, vmin=0, vmax=1,
                          interpolation='nearest', extent=extent)
        ax.set_xticks([])
        ax.set_yticks([])

        def update(i):
            image.set_data(slices[i].data)
            ax.set_title(f"Susceptibility >= {levels[i] / 100:.2f}", fontsize=13, fontweight='bold')
            return [image]

        animation = FuncAnimation(fig, update, frames=len(slices), blit=False)
        filepath = self.output_dir / "susceptibility_slices.gif"
        animation.save(filepath, writer=PillowWriter(fps=fps), dpi=min(self.dpi, 100))
        plt.close(fig)

        logger.info(f"  Saved: {filepath.name}")
        return filepath

    # =========================================================================
    # HELPERS
    # =========================================================================

    @staticmethod
    def _extent(grid) -> List[float]:
        left, bottom, right, top = grid.bounds
        return [left, right, bottom, top]

    @staticmethod
    def _north_arrow(ax):
        ax.annotate('N', xy=(0.95, 0.95), xycoords='axes fraction',
                    fontsize=14, fontweight='bold', ha='center', va='center')
        ax.annotate('↑', xy=(0.95, 0.90), xycoords='axes fraction',
                    fontsize=20, ha='center', va='center')

    def create_all_figures(self, results: Dict, slice_levels: Sequence[int] = (), fps: int = 1) -> Dict[str, Path]:
        """
        Create all figures for a pipeline run.

        Parameters
        ----------
        results : dict
            Keys used when present: 'feature_importance', 'metrics',
            'surface', 'hotspots', 'urban', 'coverage'
        slice_levels : sequence of int
            Levels of the threshold-slice animation (empty to skip)
        fps : int
            Animation frame rate

        Returns
        -------
        dict
            Paths to all created figures
        """
        logger.info("=" * 60)
        logger.info("CREATING ALL FIGURES")
        logger.info("=" * 60)

        figures = {}

        if results.get('feature_importance') is not None:
            figures['importance'] = self.plot_feature_importance(results['feature_importance'])

        metrics = results.get('metrics') or {}
        if 'confusion_matrix' in metrics:
            figures['confusion'] = self.plot_confusion_matrix(
                metrics['confusion_matrix'], title="Test Error Matrix"
            )
        if 'train_confusion_matrix' in metrics:
            figures['train_confusion'] = self.plot_confusion_matrix(
                metrics['train_confusion_matrix'], title="Resubstitution Confusion Matrix",
                filename="train_confusion_matrix"
            )

        surface = results.get('surface')
        if surface is not None:
            figures['susceptibility'] = self.plot_susceptibility_map(surface)
            figures['histogram'] = self.plot_histogram(surface)
            if slice_levels:
                figures['slices'] = self.animate_slices(surface, slice_levels, fps)

        if results.get('hotspots'):
            figures['hotspots'] = self.plot_hotspots(results['hotspots'], results.get('urban'))

        if results.get('coverage') is not None:
            figures['coverage'] = self.plot_coverage(results['coverage'])

        logger.info("=" * 60)
        logger.info(f"Created {len(figures)} figures")
        logger.info("=" * 60)

        return figures
