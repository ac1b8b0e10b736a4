from volume_segmenter import VolumeSegmenter
import matplotlib.pyplot as plt
import numpy as np

def folder_test():
    input_folder = "volumes"
    output_folder = "labels"

    VolumeSegmenter.process_folder(input_folder, output_folder)

def volume_test():
    segmenter = VolumeSegmenter(verbosity=2)

    volume = segmenter.load_volume("volumes/volume_000.npy")

    labels = segmenter.process_volume(volume)

    z = volume.shape[0] // 2
    fig, (ax_raw, ax_labels) = plt.subplots(1, 2)
    ax_raw.imshow(volume[z], cmap='gray')
    ax_labels.imshow(np.ma.masked_equal(labels[z], 0), cmap='tab20', interpolation='nearest')
    ax_raw.set_title(f"slice z={z}")
    ax_labels.set_title(f"{len(segmenter.summarize(labels))} regions")
    plt.show()



if __name__ == "__main__":
    folder_test()
    volume_test()
