"""
Forest Plot / Satellite Image Matching
======================================
Functions: load_plot_table(), add_date_ranges(), build_image_collection(),
match_plots_to_images(), export_matches()
Run stage by stage - comment/uncomment as needed.

Each forest plot is a point with a measurement date (m_date). A plot is matched
with every cloud-free image whose footprint covers the point and whose
acquisition time falls within +/- TIME_WINDOW TIME_WINDOW_UNITS of m_date.
Plots re-measured at the same location are separate 'temporary plots', each
with its own plot_id.

The plots CSV looks like:

    plot_id,m_date,lon,lat
    P1,2019-05-10,23.339927,62.276956
    P2,2019-08-11,23.339927,62.276956
    P3,2019-06-05,23.694864,60.437815
"""

import os
import time
from io import BytesIO

import ee
import pandas as pd
import matplotlib.pyplot as plt
import requests
from PIL import Image
from shapely.geometry import Point, mapping


# Time window around each measurement date.
# Units: see https://developers.google.com/earth-engine/apidocs/ee-date-advance
TIME_WINDOW = 6
TIME_WINDOW_UNITS = 'month'
TIME_UNITS = ('year', 'month', 'week', 'day', 'hour', 'minute', 'second')

EXPORT_FOLDER = 'GEE_Exports'
REQUIRED_COLUMNS = ['plot_id', 'm_date', 'lon', 'lat']

SENSORS = {
    # USGS Landsat 8 Surface Reflectance Tier 1 (Collection 1)
    'LANDSAT8_C01_SR': {
        'collection': 'LANDSAT/LC08/C01/T1_SR',
        'scale': 30,
        'bands': ['B1', 'B2', 'B3', 'B4', 'B5', 'B6', 'B7'],
        'valid_range': (0, 10000),
        'qa_band': 'pixel_qa',
        'cloud_bits': [3, 5],  # cloud shadow, cloud
        'quality_filter': ('IMAGE_QUALITY_OLI', 9),
        'drop_properties': ['lat', 'lon', 'radsat_qa', 'sr_aerosol'],
        'image_properties': {
            'LANDSAT_ID': 'Landsat_ID',
            'SENSING_TIME': 'Acquisition_date_time',
        },
        'vis_params': {'bands': ['B4', 'B3', 'B2'], 'min': 0, 'max': 3000, 'gamma': 1.4},
    },
    'LANDSAT8_C02_L2': {
        'collection': 'LANDSAT/LC08/C02/T1_L2',
        'scale': 30,
        'bands': ['SR_B1', 'SR_B2', 'SR_B3', 'SR_B4', 'SR_B5', 'SR_B6', 'SR_B7'],
        'valid_range': (7273, 43636),
        'qa_band': 'QA_PIXEL',
        'cloud_bits': [3, 4],  # cloud, cloud shadow
        'quality_filter': ('IMAGE_QUALITY_OLI', 9),
        'drop_properties': ['lat', 'lon', 'QA_RADSAT', 'SR_QA_AEROSOL'],
        'image_properties': {
            'LANDSAT_PRODUCT_ID': 'Landsat_ID',
            'DATE_ACQUIRED': 'Acquisition_date',
            'SCENE_CENTER_TIME': 'Acquisition_time',
        },
        'vis_params': {'bands': ['SR_B4', 'SR_B3', 'SR_B2'], 'min': 7000, 'max': 18000, 'gamma': 1.4},
    },
    'LANDSAT9_C02_L2': {
        'collection': 'LANDSAT/LC09/C02/T1_L2',
        'scale': 30,
        'bands': ['SR_B1', 'SR_B2', 'SR_B3', 'SR_B4', 'SR_B5', 'SR_B6', 'SR_B7'],
        'valid_range': (7273, 43636),
        'qa_band': 'QA_PIXEL',
        'cloud_bits': [3, 4],
        'quality_filter': ('IMAGE_QUALITY_OLI', 9),
        'drop_properties': ['lat', 'lon', 'QA_RADSAT', 'SR_QA_AEROSOL'],
        'image_properties': {
            'LANDSAT_PRODUCT_ID': 'Landsat_ID',
            'DATE_ACQUIRED': 'Acquisition_date',
            'SCENE_CENTER_TIME': 'Acquisition_time',
        },
        'vis_params': {'bands': ['SR_B4', 'SR_B3', 'SR_B2'], 'min': 7000, 'max': 18000, 'gamma': 1.4},
    },
    'SENTINEL2_SR': {
        'collection': 'COPERNICUS/S2_SR_HARMONIZED',
        'scale': 10,
        'bands': ['B1', 'B2', 'B3', 'B4', 'B5', 'B6', 'B7', 'B8', 'B8A', 'B9', 'B11', 'B12'],
        'valid_range': (0, 10000),
        'qa_band': 'QA60',
        'cloud_bits': [10, 11],  # opaque clouds, cirrus
        'quality_filter': None,
        'drop_properties': ['lat', 'lon'],
        'image_properties': {
            'PRODUCT_ID': 'Sentinel2_ID',
            'CLOUDY_PIXEL_PERCENTAGE': 'Cloud_cover',
        },
        'vis_params': {'bands': ['B4', 'B3', 'B2'], 'min': 0, 'max': 3000, 'gamma': 1.4},
    },
}

DEFAULT_SENSOR = 'LANDSAT8_C01_SR'
VIS_PARAMS = SENSORS[DEFAULT_SENSOR]['vis_params']


def initialize_gee(project_id='ee-forest-plots'):
    """Initialize Google Earth Engine."""
    try:
        ee.Initialize(project=project_id)
        print("✓ Earth Engine initialized!")
    except ee.EEException:
        print("Authenticating Earth Engine...")
        ee.Authenticate()
        ee.Initialize(project=project_id)
        print("✓ Earth Engine authenticated and initialized!")


def get_sensor(sensor):
    """Return the preset dict for a sensor name (or pass a preset dict through)."""
    if isinstance(sensor, dict):
        return sensor
    key = sensor.upper()
    if key not in SENSORS:
        raise ValueError(f"Unknown sensor '{sensor}'. Use one of: {', '.join(SENSORS)}")
    return SENSORS[key]


def check_time_window(time_window, time_window_units):
    if time_window_units not in TIME_UNITS:
        raise ValueError(f"time_window_units must be one of {TIME_UNITS}, got '{time_window_units}'")
    if time_window <= 0:
        raise ValueError(f"time_window must be positive, got {time_window}")


# ============================================
# PLOTS
# ============================================

def load_plot_table(plots_csv):
    """
    Read and validate the plots CSV.

    Parameters:
    -----------
    plots_csv : str
        Path to a CSV with columns plot_id, m_date (YYYY-MM-DD), lon, lat

    Returns:
    --------
    DataFrame with plot_id as str and m_date as an ISO date string
    """
    plot_df = pd.read_csv(plots_csv, dtype={'plot_id': str, 'm_date': str})

    missing = [c for c in REQUIRED_COLUMNS if c not in plot_df.columns]
    if missing:
        raise ValueError(f"{plots_csv} is missing required columns: {missing}")
    if plot_df.empty:
        raise ValueError(f"{plots_csv} contains no plots")

    plot_df['plot_id'] = plot_df['plot_id'].str.strip()
    no_id = plot_df['plot_id'].isna() | (plot_df['plot_id'] == '')
    if no_id.any():
        raise ValueError(f"{plots_csv}: {no_id.sum()} rows have no plot_id")

    duplicated = plot_df.loc[plot_df['plot_id'].duplicated(), 'plot_id'].unique().tolist()
    if duplicated:
        raise ValueError(f"plot_id must be unique, duplicated: {duplicated}")

    m_dates = pd.to_datetime(plot_df['m_date'], format='%Y-%m-%d', errors='coerce')
    bad_dates = plot_df.loc[m_dates.isna(), 'plot_id'].tolist()
    if bad_dates:
        raise ValueError(f"m_date must be YYYY-MM-DD for plots: {bad_dates}")
    plot_df['m_date'] = m_dates.dt.strftime('%Y-%m-%d')

    plot_df['lon'] = pd.to_numeric(plot_df['lon'], errors='coerce')
    plot_df['lat'] = pd.to_numeric(plot_df['lat'], errors='coerce')
    bad_coords = plot_df.loc[
        ~plot_df['lon'].between(-180, 180) | ~plot_df['lat'].between(-90, 90), 'plot_id'
    ].tolist()
    if bad_coords:
        raise ValueError(f"lon/lat out of range for plots: {bad_coords}")

    return plot_df.reset_index(drop=True)


def plots_to_feature_collection(plot_df):
    """Build an ee.FeatureCollection of plot points from a validated plot table."""
    features = []
    for _, row in plot_df.iterrows():
        geometry = ee.Geometry(mapping(Point(row['lon'], row['lat'])))
        features.append(ee.Feature(geometry, {'plot_id': row['plot_id'], 'm_date': row['m_date']}))
    return ee.FeatureCollection(features)


def load_plot_asset(asset_id):
    """Open a point table already imported as a GEE asset (needs plot_id and m_date)."""
    return ee.FeatureCollection(asset_id)


def load_plots(plots_csv=None, plots_asset=None, output_dir=None):
    """
    Plot set from an imported table asset, or else from a local plots CSV.
    The CSV is only read when no asset is given.
    """
    if plots_asset:
        print(f"\nUsing plot asset: {plots_asset}")
        return load_plot_asset(plots_asset)
    if not plots_csv:
        raise ValueError("Either plots_asset or plots_csv is required")

    plot_df = load_plot_table(plots_csv)
    print(f"\nLoaded {len(plot_df)} plots from: {plots_csv}")
    if output_dir is not None:
        plot_locations(plot_df, output_dir)
    return plots_to_feature_collection(plot_df)


def add_date_ranges(plot_set, time_window=TIME_WINDOW, time_window_units=TIME_WINDOW_UNITS):
    """Add a 'daterange' field of m_date +/- time_window to each plot."""
    check_time_window(time_window, time_window_units)

    def add_range(plot):
        m_date = ee.Date(plot.get('m_date'))
        return plot.set('daterange', ee.DateRange(
            m_date.advance(-1 * time_window, time_window_units),
            m_date.advance(time_window, time_window_units)
        ))

    return plot_set.map(add_range)


# ============================================
# IMAGES
# ============================================

def mask_clouds(image, sensor=DEFAULT_SENSOR):
    """Mask pixels whose QA band has any of the sensor's cloud bits set."""
    sensor = get_sensor(sensor)
    if not sensor['cloud_bits']:
        raise ValueError("sensor preset needs at least one cloud bit")
    qa = image.select(sensor['qa_band'])

    # All flags should be zero, indicating clear conditions
    mask = None
    for bit in sensor['cloud_bits']:
        clear = qa.bitwiseAnd(1 << bit).eq(0)
        mask = clear if mask is None else mask.And(clear)
    return image.updateMask(mask)


def build_image_collection(plot_set, sensor=DEFAULT_SENSOR, date_start='2019-01-01',
                           date_end='2019-12-31', months=None):
    """
    Images that spatially intersect the plots, filtered by quality flag and
    date, optionally restricted to a calendar-month range, and cloud masked.

    months : tuple, optional
        (first_month, last_month), eg (6, 8) keeps June, July and August
    """
    sensor = get_sensor(sensor)

    collection = ee.ImageCollection(sensor['collection']).filterBounds(plot_set)
    if sensor['quality_filter'] is not None:
        prop, value = sensor['quality_filter']
        collection = collection.filter(ee.Filter.eq(prop, value))
    collection = collection.filterDate(date_start, date_end)

    if months is not None:
        first_month, last_month = months
        if not 1 <= first_month <= last_month <= 12:
            raise ValueError(f"months must satisfy 1 <= first <= last <= 12, got {months}")
        collection = collection.filter(ee.Filter.calendarRange(first_month, last_month, 'month'))

    return collection.map(lambda image: mask_clouds(image, sensor))


def count_images(images):
    """How many images do we have?"""
    n_images = images.size().getInfo()
    print(f"    Found {n_images} images")
    return n_images


# ============================================
# MATCHING
# ============================================

def remove_properties(collection, names):
    """Remove the named properties from every feature (geometry is kept)."""
    names = ee.List(list(names))
    return collection.map(lambda feature: feature.select(feature.propertyNames().removeAll(names)))


def set_properties_from_image(image, image_properties):
    """
    Return a function for FeatureCollection.map that copies image metadata
    onto each feature, eg {'LANDSAT_ID': 'Landsat_ID'}.
    """
    def wrap(feature):
        values = {field: image.get(prop) for prop, field in image_properties.items()}
        values['image_date'] = ee.Date(image.get('system:time_start')).format('YYYY-MM-dd')
        return feature.set(values)
    return wrap


def extract_plot_values(image, plot_set, sensor=DEFAULT_SENSOR):
    """
    Intersect one image with the plots, by location and by measurement date.

    Location: the plot falls inside the unmasked image footprint.
    Date: the image acquisition time falls inside the plot's daterange.
    """
    sensor = get_sensor(sensor)

    fc = image.reduceRegions(collection=plot_set, reducer=ee.Reducer.first(), scale=sensor['scale'])
    # Plots outside the footprint or under cloud come back null
    fc = fc.filter(ee.Filter.notNull([sensor['qa_band']]))
    fc = remove_properties(fc, sensor['drop_properties'])
    fc = fc.map(set_properties_from_image(image, sensor['image_properties']))

    image_date = ee.Date(image.get('system:time_start'))
    fc = fc.filter(ee.Filter.dateRangeContains(leftField='daterange', rightValue=image_date))
    return remove_properties(fc, ['daterange'])


def match_plots_to_images(plot_set, images, sensor=DEFAULT_SENSOR):
    """Run extract_plot_values on each image and flatten into one FeatureCollection."""
    sensor = get_sensor(sensor)
    per_image = images.map(lambda image: extract_plot_values(image, plot_set, sensor))
    return ee.FeatureCollection(per_image).flatten()


# ============================================
# EXPORT
# ============================================

def export_matches(matches, description, destination='drive', folder=EXPORT_FOLDER,
                   bucket=None, file_format='CSV', start=True):
    """
    Export the matched plots as a table task.

    destination='drive' writes to a Google Drive folder (create it beforehand);
    destination='gcs' writes to a Cloud Storage bucket under folder/description.
    """
    if destination == 'drive':
        task = ee.batch.Export.table.toDrive(
            collection=matches,
            description=description,
            folder=folder,
            fileFormat=file_format
        )
    elif destination == 'gcs':
        if not bucket:
            raise ValueError("bucket is required for destination='gcs'")
        task = ee.batch.Export.table.toCloudStorage(
            collection=matches,
            description=description,
            bucket=bucket,
            fileNamePrefix=f"{folder}/{description}",
            fileFormat=file_format
        )
    else:
        raise ValueError(f"destination must be 'drive' or 'gcs', got '{destination}'")

    if start:
        task.start()
        print(f"    ✓ Export task started: {description}")
    return task


def wait_for_task(task, poll_seconds=30, timeout_seconds=6 * 3600):
    """Poll an export task until it finishes. Returns the final status dict."""
    waited = 0
    while True:
        status = task.status()
        state = status.get('state')
        if state == 'COMPLETED':
            print(f"    ✓ Task {status.get('description', '')} completed")
            return status
        if state in ('FAILED', 'CANCELLED'):
            raise RuntimeError(f"Export task {state.lower()}: {status.get('error_message', 'no error message')}")
        if waited >= timeout_seconds:
            raise TimeoutError(f"Export task still {state} after {waited} seconds")
        print(f"    Task state: {state} ({waited}s)")
        time.sleep(poll_seconds)
        waited += poll_seconds


# ============================================
# PREVIEW
# ============================================

def preview_first_image(images, plot_set, output_dir, vis_params=VIS_PARAMS, dimensions=1024):
    """Save a PNG thumbnail of the first image over the plot set bounds."""
    url = ee.Image(images.first()).getThumbURL({
        'region': plot_set.geometry().bounds(),
        'dimensions': dimensions,
        'format': 'png',
        **vis_params
    })

    r = requests.get(url, timeout=120)
    if r.status_code != 200:
        raise RuntimeError(f"Failed to retrieve thumbnail (HTTP {r.status_code})")

    save_path = os.path.join(output_dir, 'first_image_preview.png')
    Image.open(BytesIO(r.content)).save(save_path)
    print(f"    Saved: {save_path}")
    return save_path


def plot_locations(plot_df, output_dir):
    """Scatter plot of the plot locations, coloured by measurement year."""
    years = pd.to_datetime(plot_df['m_date']).dt.year

    fig, ax = plt.subplots(figsize=(8, 8), dpi=100)
    sc = ax.scatter(plot_df['lon'], plot_df['lat'], c=years, cmap='viridis', s=15, alpha=0.8)
    ax.set_xlabel('Longitude')
    ax.set_ylabel('Latitude')
    ax.set_title(f'Forest Plots\n{len(plot_df)} plots')
    ax.set_aspect('equal')
    ax.grid(True, alpha=0.3)
    plt.colorbar(sc, ax=ax, label='Measurement year')

    plt.tight_layout()
    save_path = os.path.join(output_dir, 'plot_locations.png')
    plt.savefig(save_path, dpi=150, bbox_inches='tight')
    plt.close(fig)
    print(f"    Saved: {save_path}")
    return save_path


def run_matching(plot_set, sensor=DEFAULT_SENSOR, date_start='2019-01-01', date_end='2019-12-31',
                 months=None, time_window=TIME_WINDOW, time_window_units=TIME_WINDOW_UNITS):
    """Build the matched FeatureCollection (points intersected with images)."""

    print("\n" + "=" * 60)
    print("PLOT / IMAGE MATCHING")
    print("=" * 60)

    sensor = get_sensor(sensor)

    print(f"\n[1] Loading imagery: {sensor['collection']}")
    print(f"    Date range: {date_start} to {date_end}")
    if months is not None:
        print(f"    Months: {months[0]} to {months[1]}")
    images = build_image_collection(plot_set, sensor, date_start, date_end, months)
    count_images(images)

    print(f"\n[2] Time window: ±{time_window} {time_window_units}")
    plot_set = add_date_ranges(plot_set, time_window, time_window_units)

    print("\n[3] Intersecting plots with images...")
    matches = match_plots_to_images(plot_set, images, sensor)

    return images, matches


# ============================================
# MAIN - RUN STAGE BY STAGE
# ============================================
if __name__ == "__main__":

    # =========================================
    # USER CONFIGURATION!
    # =========================================
    PLOTS_CSV = 'data/plots.csv'
    PLOTS_ASSET = None  # eg 'projects/your-project/assets/FFC_plots_SFinland'
    OUTPUT_DIR = './data/'
    GEE_PROJECT = 'your-gee-project-id'  # Replace with your GEE project ID
    SENSOR = DEFAULT_SENSOR
    DATE_START = '2019-01-01'
    DATE_END = '2019-12-31'
    MONTHS = None  # eg (6, 8) for June to August
    DESCRIPTION = 'pts_intWithImgs-2019'

    os.makedirs(OUTPUT_DIR, exist_ok=True)

    # ------------------------------------------
    # STAGE 1: Authenticate GEE
    # ------------------------------------------
    initialize_gee(project_id=GEE_PROJECT)

    # ------------------------------------------
    # STAGE 2: Load plots
    # ------------------------------------------
    plot_set = load_plots(plots_csv=PLOTS_CSV, plots_asset=PLOTS_ASSET, output_dir=OUTPUT_DIR)

    # ------------------------------------------
    # STAGE 3: Match and preview
    # ------------------------------------------
    images, matches = run_matching(plot_set, SENSOR, DATE_START, DATE_END, MONTHS)
    preview_first_image(images, plot_set, OUTPUT_DIR, vis_params=get_sensor(SENSOR)['vis_params'])

    # ------------------------------------------
    # STAGE 4: Export (pts_intWithImgs: points intersected with images)
    # ------------------------------------------
    task = export_matches(matches, DESCRIPTION, destination='drive', folder=EXPORT_FOLDER)
    wait_for_task(task)

    print("\n" + "=" * 60)
    print("EXPORT COMPLETE!")
    print("=" * 60)
