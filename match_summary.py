"""
Matched Plot Summary
==================================================
Load the table exported by forest_plot_matching (one row per plot and
intersecting image), check it, pick the nearest image per plot and plot
summaries.
"""

import os

import numpy as np
import pandas as pd
import matplotlib.pyplot as plt
import matplotlib.dates as mdates

from forest_plot_matching import (
    DEFAULT_SENSOR,
    TIME_WINDOW,
    TIME_WINDOW_UNITS,
    check_time_window,
    get_sensor,
)


# Columns GEE adds to table exports
GEE_COLUMNS = ['system:index', '.geo']

# ee.Date.advance unit -> pandas.DateOffset keyword
OFFSET_KEYWORDS = {
    'year': 'years',
    'month': 'months',
    'week': 'weeks',
    'day': 'days',
    'hour': 'hours',
    'minute': 'minutes',
    'second': 'seconds',
}


def load_matches(matches_csv):
    """
    Read an exported matches CSV.

    Drops the GEE bookkeeping columns and parses m_date and image_date.
    """
    df = pd.read_csv(matches_csv, dtype={'plot_id': str})
    df = df.drop(columns=[c for c in GEE_COLUMNS if c in df.columns])

    for column in ('m_date', 'image_date'):
        if column not in df.columns:
            raise ValueError(f"{matches_csv} has no '{column}' column")
        df[column] = pd.to_datetime(df[column])

    print(f"Loaded {len(df)} matches for {df['plot_id'].nunique()} plots from: {matches_csv}")
    return df


def date_window(m_date, time_window=TIME_WINDOW, time_window_units=TIME_WINDOW_UNITS):
    """
    Start and end of the window around m_date, the way ee.Date.advance
    computes them. Works on a single timestamp or a Series.
    """
    check_time_window(time_window, time_window_units)
    offset = pd.DateOffset(**{OFFSET_KEYWORDS[time_window_units]: time_window})
    m_date = pd.to_datetime(m_date)
    return m_date - offset, m_date + offset


def add_time_offsets(df):
    """Add offset_days: image_date minus m_date, in days."""
    df = df.copy()
    df['offset_days'] = (df['image_date'] - df['m_date']).dt.days
    return df


def check_within_window(df, time_window=TIME_WINDOW, time_window_units=TIME_WINDOW_UNITS):
    """True for rows whose image_date lies in [start, end) of the plot's window."""
    start, end = date_window(df['m_date'], time_window, time_window_units)
    return (df['image_date'] >= start) & (df['image_date'] < end)


def nearest_matches(df):
    """Keep one row per plot: the image closest in time (earliest image on ties)."""
    if 'offset_days' not in df.columns:
        df = add_time_offsets(df)
    nearest = (df.assign(_abs_offset=df['offset_days'].abs())
                 .sort_values(['plot_id', '_abs_offset', 'image_date'])
                 .groupby('plot_id', sort=True)
                 .head(1))
    return nearest.drop(columns='_abs_offset').reset_index(drop=True)


def unmatched_plots(plot_df, df):
    """Plot ids that did not match any image."""
    matched = set(df['plot_id'].astype(str))
    return sorted(p for p in plot_df['plot_id'].astype(str) if p not in matched)


def is_clear(qa_values, cloud_bits):
    """
    Boolean array, True where none of the cloud bits are set.
    Missing QA values count as not clear.
    """
    qa = pd.to_numeric(pd.Series(qa_values), errors='coerce')
    bit_mask = 0
    for bit in cloud_bits:
        bit_mask |= 1 << bit
    flags = (qa.fillna(0).to_numpy(dtype=np.int64) & bit_mask) == 0
    return flags & qa.notna().to_numpy()


def flag_cloudy_rows(df, sensor=DEFAULT_SENSOR):
    """Add a 'cloudy' column from the exported QA band value."""
    sensor = get_sensor(sensor)
    if sensor['qa_band'] not in df.columns:
        raise ValueError(f"No '{sensor['qa_band']}' column to check clouds with")
    df = df.copy()
    df['cloudy'] = ~is_clear(df[sensor['qa_band']], sensor['cloud_bits'])
    return df


def remove_outliers(data, column, z_threshold=3, valid_range=None):
    """
    Remove outliers using Z-score method.
    Returns a copy of the data with outliers replaced by NaN.
    """
    from scipy import stats

    data_copy = data.copy()

    if column in data_copy.columns and not data_copy[column].isna().all():
        data_copy[column] = data_copy[column].astype(float)
        # Remove impossible values, eg reflectance outside its valid range
        if valid_range is not None:
            low, high = valid_range
            data_copy.loc[(data_copy[column] < low) | (data_copy[column] > high), column] = np.nan

        # Remove statistical outliers
        valid_data = data_copy[column].dropna()
        if len(valid_data) > 1:
            z_scores = np.abs(stats.zscore(valid_data))
            outlier_indices = valid_data[z_scores > z_threshold].index
            data_copy.loc[outlier_indices, column] = np.nan

    return data_copy


def clean_band_values(df, sensor=DEFAULT_SENSOR, z_threshold=3):
    """Run remove_outliers on every exported band column of the sensor."""
    sensor = get_sensor(sensor)
    bands = [b for b in sensor['bands'] if b in df.columns]
    for band in bands:
        df = remove_outliers(df, band, z_threshold=z_threshold, valid_range=sensor['valid_range'])
    print(f"Cleaned {len(bands)} band columns, {int(df[bands].isna().sum().sum())} values now missing")
    return df


def create_summary_plots(df, output_dir):
    """
    Save three PNGs: time offset histogram, images per plot and
    matches per acquisition month.
    """
    if df.empty:
        print("No data to plot")
        return []

    if 'offset_days' not in df.columns:
        df = add_time_offsets(df)

    fig_size = (12, 7)
    saved = []

    print("\nCreating summary plots...")

    # =========================================
    # PLOT 1: Time offset between measurement and image
    # =========================================
    fig, ax = plt.subplots(figsize=fig_size)
    ax.hist(df['offset_days'], bins=30, color='skyblue', edgecolor='black', alpha=0.7)
    ax.axvline(x=0, color='darkgreen', linestyle='--', linewidth=2, label='Measurement date')
    ax.set_xlabel('Image date - measurement date (days)')
    ax.set_ylabel('Number of matches')
    ax.set_title('Time Offset of Matched Images')
    ax.grid(True, alpha=0.3, linestyle='--', axis='y')
    ax.legend(loc='upper right')
    plt.tight_layout()
    saved.append(os.path.join(output_dir, '01_time_offsets.png'))
    plt.savefig(saved[-1], bbox_inches='tight', facecolor='white')
    plt.close(fig)
    print("  ✓ Saved: 01_time_offsets.png")

    # =========================================
    # PLOT 2: Images per plot
    # =========================================
    per_plot = df.groupby('plot_id').size()
    fig, ax = plt.subplots(figsize=fig_size)
    ax.hist(per_plot, bins=range(1, per_plot.max() + 2), color='teal', edgecolor='black', alpha=0.7, align='left')
    ax.set_xlabel('Matched images per plot')
    ax.set_ylabel('Number of plots')
    ax.set_title('Images per Plot')
    textstr = f'Plots: {len(per_plot)}\nMean: {per_plot.mean():.1f}\nMax: {per_plot.max()}'
    ax.text(0.98, 0.98, textstr, transform=ax.transAxes, verticalalignment='top',
            horizontalalignment='right', bbox=dict(boxstyle='round', facecolor='white', alpha=0.8))
    ax.grid(True, alpha=0.3, linestyle='--', axis='y')
    plt.tight_layout()
    saved.append(os.path.join(output_dir, '02_images_per_plot.png'))
    plt.savefig(saved[-1], bbox_inches='tight', facecolor='white')
    plt.close(fig)
    print("  ✓ Saved: 02_images_per_plot.png")

    # =========================================
    # PLOT 3: Matches per acquisition month
    # =========================================
    per_month = df.set_index('image_date').resample('MS').size()
    fig, ax = plt.subplots(figsize=fig_size)
    ax.bar(per_month.index, per_month.values, width=20, color='navy', alpha=0.7)
    ax.set_xlabel('Acquisition month')
    ax.set_ylabel('Number of matches')
    ax.set_title('Matches per Acquisition Month')
    ax.xaxis.set_major_formatter(mdates.DateFormatter('%Y-%m'))
    ax.grid(True, alpha=0.3, linestyle='--', axis='y')
    fig.autofmt_xdate()
    plt.tight_layout()
    saved.append(os.path.join(output_dir, '03_matches_per_month.png'))
    plt.savefig(saved[-1], bbox_inches='tight', facecolor='white')
    plt.close(fig)
    print("  ✓ Saved: 03_matches_per_month.png")

    print(f"\n✓ Created {len(saved)} plots in {output_dir}")
    return saved


def print_summary_statistics(df):
    """
    Print summary statistics.
    """

    print("\n" + "=" * 60)
    print("SUMMARY STATISTICS")
    print("=" * 60)

    if df.empty:
        print("\n  No matches")
        return

    if 'offset_days' not in df.columns:
        df = add_time_offsets(df)

    per_plot = df.groupby('plot_id').size()
    print(f"\n  Matches: {len(df)}")
    print(f"  Plots with matches: {len(per_plot)}")
    print(f"  Images per plot: mean={per_plot.mean():.1f}, min={per_plot.min()}, max={per_plot.max()}")
    print(f"  Image dates: {df['image_date'].min():%Y-%m-%d} to {df['image_date'].max():%Y-%m-%d}")

    abs_offset = df['offset_days'].abs()
    print(f"\n  Time offset (days):")
    print(f"    Mean |offset|: {abs_offset.mean():.1f}")
    print(f"    Within 30 days: {(abs_offset <= 30).sum()} matches")
    print(f"    Within 90 days: {(abs_offset <= 90).sum()} matches")

    if 'cloudy' in df.columns:
        print(f"\n  Rows with cloud bits set: {int(df['cloudy'].sum())}")


# ============================================
# MAIN EXECUTION
# ============================================
if __name__ == "__main__":

    # =========================================
    # USER CONFIGURATION!
    # =========================================
    MATCHES_CSV = './data/pts_intWithImgs-2019.csv'  # downloaded from GEE_Exports
    PLOTS_CSV = './data/plots.csv'
    OUTPUT_DIR = './data/summary/'
    SENSOR = DEFAULT_SENSOR

    # =========================================
    # EXECUTION
    # =========================================
    from forest_plot_matching import load_plot_table

    os.makedirs(OUTPUT_DIR, exist_ok=True)

    print("=" * 60)
    print("MATCHED PLOT SUMMARY")
    print("=" * 60)

    df = load_matches(MATCHES_CSV)
    df = add_time_offsets(df)
    df = flag_cloudy_rows(df, SENSOR)
    df = clean_band_values(df, SENSOR)

    outside = ~check_within_window(df, TIME_WINDOW, TIME_WINDOW_UNITS)
    if outside.any():
        print(f"\n❌ {outside.sum()} matches fall outside ±{TIME_WINDOW} {TIME_WINDOW_UNITS}")

    missing = unmatched_plots(load_plot_table(PLOTS_CSV), df)
    print(f"\nPlots without any image: {len(missing)}")

    nearest = nearest_matches(df)
    output_file = os.path.join(OUTPUT_DIR, 'nearest_matches.csv')
    nearest.to_csv(output_file, index=False)
    print(f"\n✓ Data saved: {output_file}")

    create_summary_plots(df, OUTPUT_DIR)
    print_summary_statistics(df)

    print("\n" + "=" * 60)
    print("SUMMARY COMPLETE!")
    print("=" * 60)
